"""
Static facts about the closed set of job types.

One place that knows, for every JobType:
- which broker queue it runs on
- whether it may be admitted without a siteId
- whether several non-terminal instances per site are legitimate (dedup-exempt)
"""

from models.enums import JobType, QueueName

JOB_TYPE_TO_QUEUE: dict[JobType, QueueName] = {
    JobType.CONTENT_GENERATE: QueueName.CONTENT,
    JobType.CONTENT_OPTIMIZE: QueueName.CONTENT,
    JobType.CONTENT_REVIEW: QueueName.CONTENT,
    JobType.SEO_ANALYZE: QueueName.SEO,
    JobType.SEO_AUTO_OPTIMIZE: QueueName.SEO,
    JobType.SEO_OPPORTUNITY_SCAN: QueueName.SEO,
    JobType.SEO_OPPORTUNITY_OPTIMIZE: QueueName.SEO,
    JobType.LINK_OPPORTUNITY_SCAN: QueueName.SEO,
    JobType.LINK_BACKLINK_MONITOR: QueueName.SEO,
    JobType.GSC_SYNC: QueueName.GSC,
    JobType.GSC_VERIFY: QueueName.GSC,
    JobType.GSC_SETUP: QueueName.GSC,
    JobType.GA4_SETUP: QueueName.ANALYTICS,
    JobType.GA4_DAILY_SYNC: QueueName.ANALYTICS,
    JobType.METRICS_AGGREGATE: QueueName.ANALYTICS,
    JobType.PERFORMANCE_REPORT: QueueName.ANALYTICS,
    JobType.REFRESH_ANALYTICS_VIEWS: QueueName.ANALYTICS,
    JobType.SITE_CREATE: QueueName.SITE,
    JobType.SITE_DEPLOY: QueueName.SITE,
    JobType.DOMAIN_REGISTER: QueueName.DOMAIN,
    JobType.DOMAIN_VERIFY: QueueName.DOMAIN,
    JobType.SSL_PROVISION: QueueName.DOMAIN,
    JobType.ABTEST_ANALYZE: QueueName.ABTEST,
    JobType.ABTEST_REBALANCE: QueueName.ABTEST,
    JobType.PRODUCT_SYNC: QueueName.SYNC,
    JobType.SUPPLIER_SYNC: QueueName.SYNC,
    JobType.MICROSITE_CREATE: QueueName.MICROSITE,
    JobType.MICROSITE_PUBLISH: QueueName.MICROSITE,
    JobType.MICROSITE_CONTENT_GENERATE: QueueName.MICROSITE,
    JobType.MICROSITE_GSC_SYNC: QueueName.MICROSITE,
    JobType.SOCIAL_POST_GENERATE: QueueName.SOCIAL,
    JobType.SOCIAL_POST_PUBLISH: QueueName.SOCIAL,
    JobType.SOCIAL_DAILY_POSTING: QueueName.SOCIAL,
    JobType.AD_CAMPAIGN_SYNC: QueueName.ADS,
    JobType.AD_BUDGET_OPTIMIZER: QueueName.ADS,
    JobType.PAID_KEYWORD_SCAN: QueueName.ADS,
}

# Types that may be admitted without a siteId: cross-tenant scans and syncs,
# creation jobs whose target doesn't exist yet, and jobs keyed by another owner id.
SITE_OPTIONAL_TYPES: frozenset[JobType] = frozenset({
    JobType.SEO_OPPORTUNITY_SCAN,
    JobType.SEO_OPPORTUNITY_OPTIMIZE,
    JobType.GA4_DAILY_SYNC,
    JobType.METRICS_AGGREGATE,
    JobType.PERFORMANCE_REPORT,
    JobType.REFRESH_ANALYTICS_VIEWS,
    JobType.SITE_CREATE,
    JobType.DOMAIN_VERIFY,         # domainId
    JobType.SSL_PROVISION,         # domainId
    JobType.ABTEST_ANALYZE,        # abTestId
    JobType.ABTEST_REBALANCE,      # abTestId
    JobType.PRODUCT_SYNC,
    JobType.SUPPLIER_SYNC,
    JobType.MICROSITE_CREATE,      # opportunityId
    JobType.MICROSITE_PUBLISH,     # micrositeId
    JobType.MICROSITE_CONTENT_GENERATE,
    JobType.MICROSITE_GSC_SYNC,
    JobType.SOCIAL_POST_PUBLISH,   # socialPostId
    JobType.SOCIAL_DAILY_POSTING,
    JobType.AD_CAMPAIGN_SYNC,
    JobType.AD_BUDGET_OPTIMIZER,
    JobType.PAID_KEYWORD_SCAN,
})

# Different social platforms share a job type for the same site, so several
# non-terminal instances per (siteId, type) are legitimate.
DEDUP_EXEMPT_TYPES: frozenset[JobType] = frozenset({
    JobType.SOCIAL_POST_GENERATE,
    JobType.SOCIAL_POST_PUBLISH,
    JobType.SOCIAL_DAILY_POSTING,
})

# Payload value meaning "every site"; stored as a NULL site_id.
ALL_SITES = "all"


def queue_for(job_type: JobType) -> QueueName:
    """Look up the broker queue for a job type. Raises ValueError if unmapped."""
    queue = JOB_TYPE_TO_QUEUE.get(JobType(job_type))
    if queue is None:
        raise ValueError(f"Unknown job type: {job_type} — no queue mapping found")
    return queue
