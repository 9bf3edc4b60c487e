"""
Normalization helpers for company names and email domains.

Pure functions, no storage access. Everything that compares account names
or email domains goes through here so the resolver, the review queue and
the merge engine agree on what "the same company" means.
"""
import re
from typing import Optional
from urllib.parse import urlparse

from config.resolution_config import COMPANY_SUFFIXES, FREE_EMAIL_DOMAINS

# Anything that is not a letter, digit or whitespace becomes a separator
_PUNCTUATION_RE = re.compile(r"[^\w\s]|_")
_WHITESPACE_RE = re.compile(r"\s+")


def normalize_company_name(name: Optional[str]) -> str:
    """
    Canonicalize a company name for matching.

    Lowercases, turns punctuation and hyphens into spaces, collapses
    whitespace, then strips trailing legal-entity suffixes until none are
    left, so "Acme Corp. Holdings Inc." becomes "acme". A name made only of
    suffixes normalizes to "".

    The result is a fixed point: normalizing it again returns it unchanged.
    """
    if not name:
        return ""

    cleaned = _PUNCTUATION_RE.sub(" ", name.lower())
    tokens = _WHITESPACE_RE.sub(" ", cleaned).strip().split(" ")

    while tokens and tokens[-1] in COMPANY_SUFFIXES:
        tokens.pop()

    return " ".join(t for t in tokens if t)


def is_free_email_domain(domain: Optional[str]) -> bool:
    """True if the domain is exactly one of the known consumer mail providers."""
    if not domain:
        return False
    return domain.strip().lower() in FREE_EMAIL_DOMAINS


def extract_email_domain(email: Optional[str]) -> Optional[str]:
    """
    Extract a usable company domain from an email address.

    Returns None for empty input, for anything without exactly one "@",
    and for free-mail domains. Subdomains of free-mail providers are kept.
    """
    if not email:
        return None

    parts = email.split("@")
    if len(parts) != 2:
        return None

    domain = parts[1].strip().lower()
    if not domain:
        return None

    if domain in FREE_EMAIL_DOMAINS:
        return None

    return domain


def extract_domain_from_url(value: Optional[str]) -> Optional[str]:
    """
    Extract a bare domain from a website URL or domain string.

    "https://www.Acme.com/about" -> "acme.com", "acme.com" -> "acme.com".
    """
    if not value or not value.strip():
        return None

    raw = value.strip()
    url = raw if "://" in raw else f"https://{raw}"

    try:
        host = urlparse(url).hostname
    except ValueError:
        host = None

    if not host:
        host = raw.lower()

    host = host.lower().strip()
    if host.startswith("www."):
        host = host[4:]

    return host or None


def normalize_email(email: Optional[str]) -> Optional[str]:
    """Lowercase and trim an email address; empty input gives None."""
    if not email or not email.strip():
        return None
    return email.strip().lower()
