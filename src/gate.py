"""Clinic/Subscription Gate.

Decides whether automated flows may act for a clinic, and whether a
module feature is switched on.  Every check is **fail-closed**: a
storage error, a missing row, an unknown status string or a settings
value of the wrong shape all answer "no".
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from src.config import GATE_CACHE_TTL_SECONDS
from src.services.cache import LRUCache
from src.services.repository import Repository

logger = logging.getLogger(__name__)

# Exactly these literal statuses are processable; anything else is denied.
PROCESSABLE_STATUSES = frozenset({"trialing", "active", "past_due"})

_NO_SUBSCRIPTION = "__none__"
_MISS = object()


# ── Settings accessors ───────────────────────────────────────────────


def read_bool_setting(settings: Any, key: str) -> bool:
    """True only when *settings* is a mapping holding a real ``True`` at *key*.

    Strings such as ``"true"``, numbers, ``None`` or a non-mapping
    settings blob all read as ``False``.
    """
    if not isinstance(settings, Mapping):
        return False
    return settings.get(key) is True


class SubscriptionGate:
    """Read-through cache over subscription and module configuration."""

    def __init__(
        self,
        repository: Repository,
        *,
        cache_ttl_seconds: float = GATE_CACHE_TTL_SECONDS,
        cache: LRUCache | None = None,
    ) -> None:
        self._repository = repository
        self._cache = cache or LRUCache(max_bytes=1024 * 1024, ttl_seconds=cache_ttl_seconds)

    # ── Subscription ─────────────────────────────────────────────────

    def is_processable(self, clinic_id: str) -> bool:
        """True iff the clinic's subscription status is processable."""
        status = self._subscription_status(clinic_id)
        return status in PROCESSABLE_STATUSES

    def processable_clinic_ids(self, candidate_ids: Iterable[str]) -> set[str]:
        """Batch variant of ``is_processable`` (one storage round trip)."""
        ids = set(candidate_ids)
        if not ids:
            return set()
        try:
            statuses = self._repository.get_subscription_statuses(ids)
        except Exception:
            logger.exception("Gate: batch subscription lookup failed; denying all %d clinics", len(ids))
            return set()

        allowed = set()
        for clinic_id in ids:
            status = statuses.get(clinic_id)
            if status is not None and not isinstance(status, str):
                logger.warning("Gate: malformed subscription status %r for clinic %s", status, clinic_id)
                status = None
            self._cache.put(f"subscription:{clinic_id}", status or _NO_SUBSCRIPTION)
            if status in PROCESSABLE_STATUSES:
                allowed.add(clinic_id)
        return allowed

    def _subscription_status(self, clinic_id: str) -> str | None:
        key = f"subscription:{clinic_id}"
        cached = self._cache.get(key)
        if cached is not None:
            return None if cached == _NO_SUBSCRIPTION else cached

        try:
            status = self._repository.get_subscription_status(clinic_id)
        except Exception:
            # Errors are not cached: the next call retries the lookup
            logger.exception("Gate: subscription lookup failed for clinic %s", clinic_id)
            return None

        if status is not None and not isinstance(status, str):
            logger.warning("Gate: malformed subscription status %r for clinic %s", status, clinic_id)
            status = None
        self._cache.put(key, status or _NO_SUBSCRIPTION)
        return status

    # ── Module features ──────────────────────────────────────────────

    def is_feature_enabled(self, clinic_id: str, module_type: str, feature_key: str) -> bool:
        """True iff the module's settings carry a boolean ``True`` at *feature_key*."""
        return read_bool_setting(self._module_settings(clinic_id, module_type), feature_key)

    def is_auto_billing_enabled(self, clinic_id: str) -> bool:
        return self.is_feature_enabled(clinic_id, "billing", "auto_billing")

    def _module_settings(self, clinic_id: str, module_type: str) -> Any:
        key = f"settings:{clinic_id}:{module_type}"
        cached = self._cache.lookup(key, _MISS)
        if cached is not _MISS:
            return cached
        try:
            settings = self._repository.get_module_settings(clinic_id, module_type)
        except Exception:
            logger.exception(
                "Gate: settings lookup failed for clinic %s module %s", clinic_id, module_type,
            )
            return None
        self._cache.put(key, settings)
        return settings

    def invalidate(self, clinic_id: str) -> None:
        """Forget everything cached for *clinic_id* (after a config write)."""
        self._cache.invalidate(f"subscription:{clinic_id}")
        self._cache.invalidate_prefix(f"settings:{clinic_id}:")
