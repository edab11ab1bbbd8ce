"""
Typed job payloads — one pydantic model per JobType.

The mapping JobType → payload model is closed and static, so a payload that
doesn't fit its type is rejected at admission instead of blowing up inside a
worker an hour later.

Field names are snake_case in Python and camelCase on the wire / in the JSON
column (siteId, targetKeyword, ...). Unknown keys are kept: handlers sometimes
take extra tuning knobs that the orchestration layer doesn't need to know about.
"""

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from models.enums import JobType


class JobPayload(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    def to_json(self) -> dict:
        """Serialized form stored in the Job.payload column and sent to the broker."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")

    @property
    def owner_site_id(self) -> Optional[str]:
        return getattr(self, "site_id", None)


# ── Content ─────────────────────────────────────────────────────
class ContentGeneratePayload(JobPayload):
    site_id: str
    target_keyword: Optional[str] = None
    content_type: Optional[Literal["destination", "experience", "category", "blog", "about"]] = None
    page_id: Optional[str] = None
    opportunity_id: Optional[str] = None
    secondary_keywords: list[str] = []


class ContentOptimizePayload(JobPayload):
    site_id: str
    page_id: Optional[str] = None
    content_id: Optional[str] = None
    reason: Optional[str] = None


class ContentReviewPayload(JobPayload):
    site_id: str
    content_id: Optional[str] = None
    quality_score: Optional[float] = None


# ── SEO ─────────────────────────────────────────────────────────
class SeoAnalyzePayload(JobPayload):
    site_id: str
    full_site_audit: bool = False
    trigger_optimizations: bool = False
    force_audit: bool = False


class SeoAutoOptimizePayload(JobPayload):
    site_id: str
    scope: Literal["all", "metadata", "structured-data", "content"] = "all"


class SeoOpportunityScanPayload(JobPayload):
    site_id: Optional[str] = None
    force_rescan: bool = False
    destinations: list[str] = []


class SeoOpportunityOptimizePayload(JobPayload):
    site_id: Optional[str] = None
    max_iterations: Optional[int] = None


class LinkOpportunityScanPayload(JobPayload):
    site_id: str
    competitor_domains: list[str] = []


class LinkBacklinkMonitorPayload(JobPayload):
    site_id: str
    check_existing: bool = True


# ── GSC / analytics ─────────────────────────────────────────────
class GscSyncPayload(JobPayload):
    site_id: str
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    dimensions: list[Literal["query", "page", "country", "device"]] = []


class GscVerifyPayload(JobPayload):
    site_id: str
    domain: Optional[str] = None


class GscSetupPayload(JobPayload):
    site_id: str
    domain: Optional[str] = None
    cloudflare_zone_id: Optional[str] = None


class Ga4SetupPayload(JobPayload):
    site_id: str
    account_id: Optional[str] = None


class SiteOptionalPayload(JobPayload):
    """Fan-out / system-wide jobs: siteId is optional, usually absent or "all"."""
    site_id: Optional[str] = None


class MetricsAggregatePayload(JobPayload):
    site_id: Optional[str] = None
    date: Optional[str] = None
    aggregation_type: Literal["daily", "weekly", "monthly"] = "daily"


class PerformanceReportPayload(JobPayload):
    site_id: Optional[str] = None
    report_type: Literal["daily", "weekly", "monthly"] = "weekly"
    recipients: list[str] = []


# ── Site / domain ───────────────────────────────────────────────
class SiteCreatePayload(JobPayload):
    opportunity_id: str
    domain: Optional[str] = None
    auto_publish: bool = False


class SiteDeployPayload(JobPayload):
    site_id: str
    environment: Literal["staging", "production"] = "production"


class DomainRegisterPayload(JobPayload):
    site_id: str
    domain: str
    registrar: Literal["namecheap", "cloudflare", "google"] = "cloudflare"


class DomainVerifyPayload(JobPayload):
    domain_id: str
    method: Literal["dns", "http"] = "dns"


class SslProvisionPayload(JobPayload):
    domain_id: str
    provider: Literal["letsencrypt", "cloudflare"] = "cloudflare"


# ── A/B testing ─────────────────────────────────────────────────
class ABTestAnalyzePayload(JobPayload):
    ab_test_id: str
    min_samples: Optional[int] = None
    confidence_level: Optional[float] = None


class ABTestRebalancePayload(JobPayload):
    ab_test_id: str
    algorithm: Literal["thompson_sampling", "epsilon_greedy"] = "thompson_sampling"


# ── Microsites ──────────────────────────────────────────────────
class MicrositeCreatePayload(JobPayload):
    opportunity_id: str


class MicrositePayload(JobPayload):
    microsite_id: str


# ── Social ──────────────────────────────────────────────────────
class SocialPostGeneratePayload(JobPayload):
    site_id: str
    platform: Literal["pinterest", "facebook", "twitter", "instagram"]


class SocialPostPublishPayload(JobPayload):
    social_post_id: str


PAYLOAD_MODELS: dict[JobType, type[JobPayload]] = {
    JobType.CONTENT_GENERATE: ContentGeneratePayload,
    JobType.CONTENT_OPTIMIZE: ContentOptimizePayload,
    JobType.CONTENT_REVIEW: ContentReviewPayload,
    JobType.SEO_ANALYZE: SeoAnalyzePayload,
    JobType.SEO_AUTO_OPTIMIZE: SeoAutoOptimizePayload,
    JobType.SEO_OPPORTUNITY_SCAN: SeoOpportunityScanPayload,
    JobType.SEO_OPPORTUNITY_OPTIMIZE: SeoOpportunityOptimizePayload,
    JobType.LINK_OPPORTUNITY_SCAN: LinkOpportunityScanPayload,
    JobType.LINK_BACKLINK_MONITOR: LinkBacklinkMonitorPayload,
    JobType.GSC_SYNC: GscSyncPayload,
    JobType.GSC_VERIFY: GscVerifyPayload,
    JobType.GSC_SETUP: GscSetupPayload,
    JobType.GA4_SETUP: Ga4SetupPayload,
    JobType.GA4_DAILY_SYNC: SiteOptionalPayload,
    JobType.METRICS_AGGREGATE: MetricsAggregatePayload,
    JobType.PERFORMANCE_REPORT: PerformanceReportPayload,
    JobType.REFRESH_ANALYTICS_VIEWS: SiteOptionalPayload,
    JobType.SITE_CREATE: SiteCreatePayload,
    JobType.SITE_DEPLOY: SiteDeployPayload,
    JobType.DOMAIN_REGISTER: DomainRegisterPayload,
    JobType.DOMAIN_VERIFY: DomainVerifyPayload,
    JobType.SSL_PROVISION: SslProvisionPayload,
    JobType.ABTEST_ANALYZE: ABTestAnalyzePayload,
    JobType.ABTEST_REBALANCE: ABTestRebalancePayload,
    JobType.PRODUCT_SYNC: SiteOptionalPayload,
    JobType.SUPPLIER_SYNC: SiteOptionalPayload,
    JobType.MICROSITE_CREATE: MicrositeCreatePayload,
    JobType.MICROSITE_PUBLISH: MicrositePayload,
    JobType.MICROSITE_CONTENT_GENERATE: MicrositePayload,
    JobType.MICROSITE_GSC_SYNC: SiteOptionalPayload,
    JobType.SOCIAL_POST_GENERATE: SocialPostGeneratePayload,
    JobType.SOCIAL_POST_PUBLISH: SocialPostPublishPayload,
    JobType.SOCIAL_DAILY_POSTING: SiteOptionalPayload,
    JobType.AD_CAMPAIGN_SYNC: SiteOptionalPayload,
    JobType.AD_BUDGET_OPTIMIZER: SiteOptionalPayload,
    JobType.PAID_KEYWORD_SCAN: SiteOptionalPayload,
}


def parse_payload(job_type: JobType, payload: "dict | JobPayload") -> JobPayload:
    """
    Validate a raw payload against the model for job_type.

    Accepts either a dict (from HTTP or another worker) or an already-built model.
    A model of the wrong class is rejected — that is the whole point of the mapping.

    Raises:
        TypeError: payload model doesn't belong to job_type
        pydantic.ValidationError: dict doesn't fit the model
    """
    model_cls = PAYLOAD_MODELS[JobType(job_type)]
    if isinstance(payload, JobPayload):
        if not isinstance(payload, model_cls):
            raise TypeError(
                f"{type(payload).__name__} is not a valid payload for {job_type} "
                f"(expected {model_cls.__name__})"
            )
        return payload
    return model_cls.model_validate(payload or {})


