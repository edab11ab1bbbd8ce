"""
Shared enumerations used across the entire project.

Using Python enums (inheriting from str) means:
- They serialize to JSON automatically ("PENDING", not "JobStatus.PENDING")
- They work as SQLAlchemy column values
- They work as FastAPI query parameters
- Typos become immediate errors instead of silent bugs
"""

import enum


class JobStatus(str, enum.Enum):
    PENDING = "PENDING"        # admitted, waiting in the broker
    SCHEDULED = "SCHEDULED"    # admitted with a delay, not due yet
    RUNNING = "RUNNING"        # a worker holds the broker lease
    RETRYING = "RETRYING"      # failed, waiting for its backoff delay
    FAILED = "FAILED"          # dead-lettered or permanently failed by recovery
    COMPLETED = "COMPLETED"    # handler succeeded


NON_TERMINAL_STATUSES = (
    JobStatus.PENDING,
    JobStatus.SCHEDULED,
    JobStatus.RUNNING,
    JobStatus.RETRYING,
)
TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


class QueueName(str, enum.Enum):
    CONTENT = "content"
    SEO = "seo"
    GSC = "gsc"
    SITE = "site"
    DOMAIN = "domain"
    ANALYTICS = "analytics"
    ABTEST = "abtest"
    SYNC = "sync"
    MICROSITE = "microsite"
    SOCIAL = "social"
    ADS = "ads"


# Placeholder queue for rows an upstream planner creates before the work is
# actually admitted. These rows never have a broker entry.
PLANNED_QUEUE = "planned"


class JobType(str, enum.Enum):
    # content
    CONTENT_GENERATE = "CONTENT_GENERATE"
    CONTENT_OPTIMIZE = "CONTENT_OPTIMIZE"
    CONTENT_REVIEW = "CONTENT_REVIEW"
    # seo
    SEO_ANALYZE = "SEO_ANALYZE"
    SEO_AUTO_OPTIMIZE = "SEO_AUTO_OPTIMIZE"
    SEO_OPPORTUNITY_SCAN = "SEO_OPPORTUNITY_SCAN"
    SEO_OPPORTUNITY_OPTIMIZE = "SEO_OPPORTUNITY_OPTIMIZE"
    LINK_OPPORTUNITY_SCAN = "LINK_OPPORTUNITY_SCAN"
    LINK_BACKLINK_MONITOR = "LINK_BACKLINK_MONITOR"
    # gsc
    GSC_SYNC = "GSC_SYNC"
    GSC_VERIFY = "GSC_VERIFY"
    GSC_SETUP = "GSC_SETUP"
    # analytics
    GA4_SETUP = "GA4_SETUP"
    GA4_DAILY_SYNC = "GA4_DAILY_SYNC"
    METRICS_AGGREGATE = "METRICS_AGGREGATE"
    PERFORMANCE_REPORT = "PERFORMANCE_REPORT"
    REFRESH_ANALYTICS_VIEWS = "REFRESH_ANALYTICS_VIEWS"
    # site
    SITE_CREATE = "SITE_CREATE"
    SITE_DEPLOY = "SITE_DEPLOY"
    # domain
    DOMAIN_REGISTER = "DOMAIN_REGISTER"
    DOMAIN_VERIFY = "DOMAIN_VERIFY"
    SSL_PROVISION = "SSL_PROVISION"
    # abtest
    ABTEST_ANALYZE = "ABTEST_ANALYZE"
    ABTEST_REBALANCE = "ABTEST_REBALANCE"
    # sync
    PRODUCT_SYNC = "PRODUCT_SYNC"
    SUPPLIER_SYNC = "SUPPLIER_SYNC"
    # microsite
    MICROSITE_CREATE = "MICROSITE_CREATE"
    MICROSITE_PUBLISH = "MICROSITE_PUBLISH"
    MICROSITE_CONTENT_GENERATE = "MICROSITE_CONTENT_GENERATE"
    MICROSITE_GSC_SYNC = "MICROSITE_GSC_SYNC"
    # social
    SOCIAL_POST_GENERATE = "SOCIAL_POST_GENERATE"
    SOCIAL_POST_PUBLISH = "SOCIAL_POST_PUBLISH"
    SOCIAL_DAILY_POSTING = "SOCIAL_DAILY_POSTING"
    # ads
    AD_CAMPAIGN_SYNC = "AD_CAMPAIGN_SYNC"
    AD_BUDGET_OPTIMIZER = "AD_BUDGET_OPTIMIZER"
    PAID_KEYWORD_SCAN = "PAID_KEYWORD_SCAN"


class ErrorCategory(str, enum.Enum):
    EXTERNAL_API = "EXTERNAL_API"
    DATABASE = "DATABASE"
    CONFIGURATION = "CONFIGURATION"
    BUSINESS_LOGIC = "BUSINESS_LOGIC"
    NOT_FOUND = "NOT_FOUND"
    RATE_LIMIT = "RATE_LIMIT"
    AUTH = "AUTH"
    NETWORK = "NETWORK"
    UNKNOWN = "UNKNOWN"


class ErrorSeverity(str, enum.Enum):
    TEMPORARY = "TEMPORARY"      # likely to succeed on retry
    RECOVERABLE = "RECOVERABLE"  # may succeed on retry with backoff
    PERMANENT = "PERMANENT"      # unlikely to succeed without intervention
    CRITICAL = "CRITICAL"        # requires immediate attention


class IncidentSeverity(str, enum.Enum):
    """Severity of recovery and dead-letter events written to the error log."""
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"
