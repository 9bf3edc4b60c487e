"""
Entity Resolution Configuration.

Fixed constants shared by the resolver, the review queue and the merge
engine. Tier confidences are constants, not learned per call.
"""

# Consumer / free-mail providers. Exact match only: subdomains such as
# corp.gmail.com are treated as company domains.
FREE_EMAIL_DOMAINS = frozenset({
    "gmail.com",
    "yahoo.com",
    "hotmail.com",
    "outlook.com",
    "aol.com",
    "icloud.com",
    "mail.com",
    "protonmail.com",
    "proton.me",
    "live.com",
    "msn.com",
    "yandex.com",
    "zoho.com",
    "fastmail.com",
    "tutanota.com",
    "hey.com",
})

# Legal-entity suffixes, stored in their punctuation-stripped form
# ("Inc." and "Inc" both normalize to "inc").
COMPANY_SUFFIXES = frozenset({
    "inc",
    "incorporated",
    "corp",
    "corporation",
    "llc",
    "ltd",
    "limited",
    "co",
    "company",
    "group",
    "holdings",
    "plc",
    "gmbh",
    "sa",
    "ag",
})

# Resolver tier confidences
PRIMARY_DOMAIN_CONFIDENCE = 0.95
ALIAS_DOMAIN_CONFIDENCE = 0.90
CONTACT_DOMAIN_CONFIDENCE = 0.85
FUZZY_CONFIDENCE_CAP = 0.75

# Fuzzy acceptance thresholds (max distance, 0 = identical)
RESOLVER_FUZZY_THRESHOLD = 0.3
SUGGESTION_FUZZY_THRESHOLD = 0.5
DUPLICATE_FUZZY_THRESHOLD = 0.35

# Minimum normalized length for a fuzzy candidate string
MIN_CANDIDATE_LENGTH = 2

# Review queue
QUEUE_CONFIDENCE_THRESHOLD = 0.7
QUEUE_DEFAULT_PAGE_SIZE = 25
QUEUE_MAX_PAGE_SIZE = 100
SUGGESTION_DOMAIN_CONFIDENCE = 0.85
SUGGESTION_FUZZY_LIMIT = 5
MAX_SUGGESTIONS = 3
ACCOUNT_SEARCH_LIMIT = 20

# Merge engine
SHARED_DOMAIN_SIMILARITY = 0.95
MERGE_RUNS_MAX_LIMIT = 200

# Downstream processing job options
PROCESS_CALL_JOB_NAME = "process-call"
PROCESS_CALL_JOB_ATTEMPTS = 3
PROCESS_CALL_JOB_BACKOFF_MS = 5000

# Unified-API integration slug -> call provider
INTEGRATION_SLUG_PROVIDERS = {
    "gong": "GONG",
    "chorus": "CHORUS",
    "zoom": "ZOOM",
    "google-meet": "GOOGLE_MEET",
    "google_meet": "GOOGLE_MEET",
    "teams": "TEAMS",
    "microsoft-teams": "TEAMS",
    "fireflies": "FIREFLIES",
    "dialpad": "DIALPAD",
    "aircall": "AIRCALL",
    "ringcentral": "RINGCENTRAL",
    "salesloft": "SALESLOFT",
    "outreach": "OUTREACH",
}
DEFAULT_CALL_PROVIDER = "OTHER"

# CRM provider -> account/contact column holding its native id
CRM_ID_COLUMNS = {
    "salesforce": "salesforce_id",
    "hubspot": "hubspot_id",
}
