"""
rules.py

Explainable rule-based URL scorer.

Public function:
    score(canon: str, intel: HostIntel | None, policy: RulePolicy = DEFAULT_POLICY)
        -> (total, hits)

Higher scores are riskier. Every rule that fires appends a Hit, in a fixed
evaluation order, so the same input always yields the same explanation.
Deciding what a score means (safe/suspicious/malicious) is left to the caller.
"""

from dataclasses import dataclass
from typing import FrozenSet, List, Optional, Tuple

from .. import config
from ..models import Hit, HostIntel

# Tunable weights (points added when a rule fires)
WEIGHT_INVALID_URL = 50
WEIGHT_LONG_URL = 15
WEIGHT_VERY_LONG_URL = 10
WEIGHT_MANY_DIGITS = 10
WEIGHT_VERY_MANY_DIGITS = 10
WEIGHT_AT_SYMBOL = 20
WEIGHT_LOGIN_KEYWORD = 5
WEIGHT_MANY_PATHS = 10
WEIGHT_RISKY_TLD = 20
WEIGHT_NO_TLS = 25
WEIGHT_YOUNG_TLS = 10
WEIGHT_VERY_YOUNG_TLS = 10
WEIGHT_YOUNG_DOMAIN = 15
WEIGHT_VERY_YOUNG_DOMAIN = 10
WEIGHT_NO_DNS = 10
WEIGHT_NO_HOST_INTEL = 5


@dataclass(frozen=True)
class RulePolicy:
    """Policy tables and thresholds. Change these, not the rules."""
    risky_tlds: FrozenSet[str] = frozenset(config.RISKY_TLDS)
    login_keyword: str = "login"
    long_url: int = 120
    very_long_url: int = 200
    many_digits: int = 20
    very_many_digits: int = 40
    many_slashes: int = 8
    young_days: int = 30
    very_young_days: int = 7
    malicious_threshold: int = config.MALICIOUS_THRESHOLD
    suspicious_threshold: int = config.SUSPICIOUS_THRESHOLD


DEFAULT_POLICY = RulePolicy()


def _age_rules(hits: List[Hit], age: int, policy: RulePolicy, what: str,
               young: Tuple[str, int], very_young: Tuple[str, int]) -> None:
    if age < policy.young_days:
        hits.append(Hit(young[0], young[1], f"{what} age < {policy.young_days} days"))
    if age < policy.very_young_days:
        hits.append(Hit(very_young[0], very_young[1], f"{what} age < {policy.very_young_days} days"))


def _intel_rules(hits: List[Hit], intel: HostIntel, policy: RulePolicy) -> None:
    tld = (intel.tld or "").lower()
    if tld and tld in policy.risky_tlds:
        hits.append(Hit("risky_tld", WEIGHT_RISKY_TLD, f"High-risk/free TLD: {tld}"))

    if intel.tls_age_days is None:
        hits.append(Hit("no_tls", WEIGHT_NO_TLS, "No TLS certificate observed"))
    else:
        _age_rules(hits, intel.tls_age_days, policy, "TLS cert",
                   ("young_tls", WEIGHT_YOUNG_TLS),
                   ("very_young_tls", WEIGHT_VERY_YOUNG_TLS))

    # only populated when a WHOIS lookup is configured
    if intel.domain_age_days is not None:
        _age_rules(hits, intel.domain_age_days, policy, "Domain",
                   ("young_domain", WEIGHT_YOUNG_DOMAIN),
                   ("very_young_domain", WEIGHT_VERY_YOUNG_DOMAIN))

    if not intel.ip or not intel.ip.strip():
        hits.append(Hit("no_dns", WEIGHT_NO_DNS, "No A/AAAA record resolved"))


def score(canon: str, intel: Optional[HostIntel],
          policy: RulePolicy = DEFAULT_POLICY) -> Tuple[int, List[Hit]]:
    """
    Score a canonical URL and optional host intel.

    Returns (total, hits) where total is the sum of the hit weights:

        >>> score("", None)
        (50, [Hit(name='invalid_url', weight=50, reason='URL missing or blank')])
    """
    hits: List[Hit] = []

    if canon is None or not canon.strip():
        hits.append(Hit("invalid_url", WEIGHT_INVALID_URL, "URL missing or blank"))
        return WEIGHT_INVALID_URL, hits

    # Length
    if len(canon) > policy.long_url:
        hits.append(Hit("long_url", WEIGHT_LONG_URL, f"URL length > {policy.long_url}"))
    if len(canon) > policy.very_long_url:
        hits.append(Hit("very_long_url", WEIGHT_VERY_LONG_URL, f"URL length > {policy.very_long_url}"))

    # Digits
    digits = sum(1 for ch in canon if ch.isdigit())
    if digits > policy.many_digits:
        hits.append(Hit("many_digits", WEIGHT_MANY_DIGITS, f"Digit count > {policy.many_digits}"))
    if digits > policy.very_many_digits:
        hits.append(Hit("very_many_digits", WEIGHT_VERY_MANY_DIGITS, f"Digit count > {policy.very_many_digits}"))

    # Patterns commonly seen in phishing
    if "@" in canon:
        hits.append(Hit("at_symbol", WEIGHT_AT_SYMBOL, "'@' symbol present"))
    if policy.login_keyword in canon.lower():
        hits.append(Hit("login_keyword", WEIGHT_LOGIN_KEYWORD, f"Contains '{policy.login_keyword}' keyword"))

    # Path depth
    if canon.count("/") > policy.many_slashes:
        hits.append(Hit("many_paths", WEIGHT_MANY_PATHS, "Many path segments"))

    if intel is not None:
        _intel_rules(hits, intel, policy)
    else:
        hits.append(Hit("no_host_intel", WEIGHT_NO_HOST_INTEL, "Host intel unavailable"))

    return sum(h.weight for h in hits), hits
