"""
scanner.py
Core analysis stage: canonicalize, collect host intel, score, store a verdict.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from ..db import Repository
from ..models import HostIntel, Url, Verdict, VerdictClass, VerdictStatus
from .canonicalize import canonicalize, host_of
from .host_intel import collect
from .rules import DEFAULT_POLICY, RulePolicy, score

logger = logging.getLogger("scanner")


def classify(total: int, policy: RulePolicy = DEFAULT_POLICY) -> Tuple[VerdictStatus, VerdictClass]:
    """Map a rule score onto (verdict status, class label)."""
    if total >= policy.malicious_threshold:
        return VerdictStatus.malicious, VerdictClass.phishing
    if total >= policy.suspicious_threshold:
        return VerdictStatus.suspicious, VerdictClass.unknown
    return VerdictStatus.safe, VerdictClass.benign


def verdict_payload(canon: str, verdict: Verdict) -> Dict[str, Any]:
    return {
        "url": canon,
        "verdict": verdict.status.value,
        "class": verdict.clazz.value,
        "score": verdict.score,
        "reasons": [h.to_dict() for h in verdict.hits],
    }


class Scanner:
    def __init__(self, repository: Repository,
                 collector: Callable[[str], HostIntel] = collect,
                 policy: RulePolicy = DEFAULT_POLICY):
        self.repository = repository
        self.collector = collector
        self.policy = policy

    def _url_for(self, canon: str) -> Url:
        url = self.repository.find_url_by_canonical(canon)
        if url is None:
            url = self.repository.save_url(Url(canonical=canon))
        return url

    def _intel_for(self, url: Url) -> HostIntel:
        # collect only when missing; stored intel is reused as-is
        intel = self.repository.find_host_intel(url.id)
        if intel is None:
            intel = self.collector(host_of(url.canonical))
            intel.url_id = url.id
            self.repository.save_host_intel(intel)
        return intel

    def analyze(self, raw_url: str) -> Dict[str, Any]:
        """
        Run the full core analysis for raw_url and upsert its verdict.

        Raises InvalidUrlError when raw_url cannot be canonicalized. Returns:
        {
          "url": "<canonical>",
          "verdict": "safe" | "suspicious" | "malicious",
          "class": "benign" | "unknown" | "phishing",
          "score": 45,
          "reasons": [{"name": "no_tls", "weight": 25, "reason": "..."}, ...]
        }
        """
        canon = canonicalize(raw_url)
        url = self._url_for(canon)
        intel = self._intel_for(url)

        total, hits = score(canon, intel, self.policy)
        status, clazz = classify(total, self.policy)

        verdict = self.repository.find_verdict(url.id) or Verdict(url_id=url.id)
        verdict.status = status
        verdict.clazz = clazz
        verdict.score = total
        verdict.hits = hits
        verdict.updated_at = datetime.now(timezone.utc)
        self.repository.save_verdict(verdict)

        logger.info("Scored %s: score=%d verdict=%s", canon, total, status.value)
        return verdict_payload(canon, verdict)

    def lookup_verdict(self, raw_url: str) -> Optional[Dict[str, Any]]:
        """Return the stored verdict for raw_url, or None if it was never analyzed."""
        canon = canonicalize(raw_url)
        url = self.repository.find_url_by_canonical(canon)
        if url is None:
            return None
        verdict = self.repository.find_verdict(url.id)
        if verdict is None:
            return None
        return verdict_payload(canon, verdict)
