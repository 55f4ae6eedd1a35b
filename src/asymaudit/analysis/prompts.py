"""System prompts for the scoring service, one per audit type."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Sequence, Tuple

from ..orchestrator.models import AuditType


RESPONSE_SCHEMA = """Return your analysis as valid JSON matching this structure:
{
  "overallScore": number (0-100),
  "scores": {
%(score_lines)s
  },
  "issues": [
    {
      "severity": "critical" | "warning" | "info",
      "category": string,
      "title": string,
      "description": string,
      "recommendation": string,
      "impact": string
    }
  ],
  "recommendations": [
    {
      "priority": "high" | "medium" | "low",
      "title": string,
      "description": string,
      "estimatedImpact": string,
      "effort": string
    }
  ],
  "summary": string,
  "trendAnalysis": string | null
}"""


@dataclass(frozen=True)
class PromptProfile:
    subject: str
    categories: Sequence[Tuple[str, str]]
    focus_areas: Sequence[str]
    closing: str


WORDPRESS_HEALTH = PromptProfile(
    subject="WordPress site health, plugin hygiene and maintenance posture",
    categories=(
        ("core_health", "WordPress core version, PHP version, debug settings"),
        ("plugins", "Plugin count, outdated plugins, abandoned or vulnerable plugins"),
        ("themes", "Active theme updates, unused themes"),
        ("maintenance", "Backups, uptime, scheduled tasks"),
    ),
    focus_areas=(
        "Outdated core, plugins and themes with known vulnerabilities",
        "Backup recency and restore readiness",
        "Unused plugins or themes that widen the attack surface",
    ),
    closing="Reference exact versions and plugin names from the audit data.",
)

GA4_CONFIG = PromptProfile(
    subject="Google Analytics 4 property configuration",
    categories=(
        ("data_streams", "Stream setup, enhanced measurement"),
        ("events", "Key events, custom events, naming consistency"),
        ("conversions", "Conversion setup and attribution"),
        ("governance", "Data retention, filters, user access"),
    ),
    focus_areas=(
        "Missing or misconfigured conversions",
        "Data retention shorter than reporting needs",
        "Internal traffic and referral exclusion filters",
    ),
    closing="Reference exact event names and property settings.",
)

GA4_DATA_QUALITY = PromptProfile(
    subject="Google Analytics 4 data quality",
    categories=(
        ("completeness", "Missing parameters, (not set) values"),
        ("consistency", "Session and event volume anomalies"),
        ("attribution", "Source/medium quality, unassigned traffic"),
    ),
    focus_areas=(
        "Spikes or drops in sessions and events",
        "High share of unassigned or (not set) traffic",
    ),
    closing="Quantify every anomaly you report.",
)

GOOGLE_ADS_ACCOUNT = PromptProfile(
    subject="Google Ads account structure and performance",
    categories=(
        ("structure", "Campaign and ad group organisation"),
        ("quality", "Quality score, ad relevance, landing pages"),
        ("efficiency", "CTR, conversion rate, CPA"),
        ("tracking", "Conversion tracking and auto-tagging"),
    ),
    focus_areas=(
        "Low quality scores and their drivers",
        "Wasted spend on non-converting keywords",
        "Conversion tracking gaps",
    ),
    closing="Reference exact campaign names, spend and conversion figures.",
)

GOOGLE_ADS_CAMPAIGNS = PromptProfile(
    subject="Google Ads campaign performance",
    categories=(
        ("budget", "Budget pacing and limited-by-budget campaigns"),
        ("bidding", "Bid strategy fit"),
        ("creative", "Ad strength and asset coverage"),
    ),
    focus_areas=(
        "Campaigns limited by budget while profitable",
        "Bid strategies misaligned with conversion volume",
    ),
    closing="Reference exact campaign names and metrics.",
)

GTM_CONTAINER = PromptProfile(
    subject="Google Tag Manager container hygiene",
    categories=(
        ("tags", "Tag coverage, paused and duplicate tags"),
        ("triggers", "Trigger accuracy and reuse"),
        ("variables", "Variable naming and unused variables"),
        ("governance", "Versioning and workspace hygiene"),
    ),
    focus_areas=(
        "Duplicate or conflicting tags",
        "Tags firing on all pages without need",
        "Unpublished workspace changes",
    ),
    closing="Reference exact tag, trigger and variable names.",
)

SEO_TECHNICAL = PromptProfile(
    subject="website technical SEO implementation",
    categories=(
        ("crawlability", "Robots.txt, sitemap, internal linking, crawl errors"),
        ("indexability", "Meta tags, canonical tags, duplicate content, noindex usage"),
        ("site_structure", "URL structure, navigation, site architecture"),
        ("technical_performance", "Page speed, HTTPS, mobile optimisation"),
    ),
    focus_areas=(
        "Robots.txt directives and sitemap references",
        "Meta description, canonical and Open Graph tags",
        "Heading structure and image alt coverage",
        "Redirect chains and HTTPS enforcement",
    ),
    closing=(
        "Focus on specific technical issues, error counts and measurable SEO "
        "factors that impact search performance."
    ),
)

SEO_BACKLINKS = PromptProfile(
    subject="website backlink profile",
    categories=(
        ("authority", "Domain authority and referring domain quality"),
        ("diversity", "Referring domain and anchor text diversity"),
        ("risk", "Toxic or spammy links"),
    ),
    focus_areas=(
        "Lost high-authority links since the previous audit",
        "Over-optimised anchor text",
    ),
    closing="Reference exact domains and link counts.",
)

CLOUDFLARE_CONFIG = PromptProfile(
    subject="Cloudflare zone configuration",
    categories=(
        ("security", "SSL mode, WAF, bot protection"),
        ("performance", "Caching, minification, HTTP/3"),
        ("reliability", "DNS records, page rules"),
    ),
    focus_areas=(
        "SSL mode weaker than Full (strict)",
        "Caching rules that bypass static assets",
    ),
    closing="Reference exact zone settings.",
)

_PROFILES: Dict[AuditType, PromptProfile] = {
    AuditType.WORDPRESS_HEALTH: WORDPRESS_HEALTH,
    AuditType.WORDPRESS_SEO: WORDPRESS_HEALTH,
    AuditType.WORDPRESS_PERFORMANCE: WORDPRESS_HEALTH,
    AuditType.WORDPRESS_SECURITY: WORDPRESS_HEALTH,
    AuditType.GA4_CONFIG: GA4_CONFIG,
    AuditType.GA4_DATA_QUALITY: GA4_DATA_QUALITY,
    AuditType.GOOGLE_ADS_ACCOUNT: GOOGLE_ADS_ACCOUNT,
    AuditType.GOOGLE_ADS_CAMPAIGNS: GOOGLE_ADS_CAMPAIGNS,
    AuditType.GTM_CONTAINER: GTM_CONTAINER,
    AuditType.SEO_TECHNICAL: SEO_TECHNICAL,
    AuditType.SEO_BACKLINKS: SEO_BACKLINKS,
    AuditType.CLOUDFLARE_CONFIG: CLOUDFLARE_CONFIG,
}


def build_prompt(profile: PromptProfile) -> str:
    categories = "\n".join(
        f"- {name} ({100 // len(profile.categories)}%): {hint}"
        for name, hint in profile.categories
    )
    focus = "\n".join(
        f"{index}. {area}" for index, area in enumerate(profile.focus_areas, start=1)
    )
    score_lines = ",\n".join(
        f'    "{name}": number (0-100)' for name, _ in profile.categories
    )
    schema = RESPONSE_SCHEMA % {"score_lines": score_lines}
    return (
        f"You are an expert auditor analyzing {profile.subject}.\n\n"
        "Your job is to:\n"
        "1. Score the audit results overall (0-100) based on best practices.\n"
        "2. Identify specific issues with severity levels (critical, warning, info).\n"
        "3. Provide actionable recommendations prioritized by impact and effort.\n"
        "4. If previous audit data is provided, identify what improved, what "
        "degraded and what is new.\n\n"
        "SCORING GUIDELINES:\n"
        "- Overall Score: weighted average of category scores\n"
        f"{categories}\n\n"
        "FOCUS AREAS:\n"
        f"{focus}\n\n"
        f"{schema}\n\n"
        f"{profile.closing}"
    )


def generic_prompt(audit_type: str) -> str:
    schema = RESPONSE_SCHEMA % {"score_lines": '    "category": number (0-100)'}
    return (
        f"You are an expert digital marketing auditor analyzing {audit_type} audit data.\n\n"
        "Score the results overall (0-100), identify issues with severity levels "
        "(critical, warning, info), provide prioritized recommendations and, when "
        "previous audit data is provided, describe the trend.\n\n"
        f"{schema}\n\n"
        "Be specific and actionable. Reference exact values from the audit data."
    )


def get_prompt(audit_type: AuditType) -> str:
    """System prompt for ``audit_type``, falling back to a generic auditor prompt."""
    profile = _PROFILES.get(audit_type)
    if profile is None:
        return generic_prompt(audit_type.value)
    return build_prompt(profile)
