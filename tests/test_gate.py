"""Tests for the subscription gate and typed settings accessors."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from src.gate import SubscriptionGate, read_bool_setting
from src.models import ModuleConfig
from src.services.cache import LRUCache
from src.services.memory_store import InMemoryRepository


@pytest.fixture
def repo():
    return InMemoryRepository()


class TestIsProcessable:
    @pytest.mark.parametrize("status", ["trialing", "active", "past_due"])
    def test_processable_statuses(self, repo, status):
        repo.set_subscription("c1", status)
        assert SubscriptionGate(repo).is_processable("c1") is True

    @pytest.mark.parametrize("status", ["canceled", "unpaid", "incomplete", "paused", "ACTIVE", ""])
    def test_other_statuses_are_denied(self, repo, status):
        repo.set_subscription("c1", status)
        assert SubscriptionGate(repo).is_processable("c1") is False

    def test_missing_subscription_is_denied(self, repo):
        assert SubscriptionGate(repo).is_processable("c1") is False

    def test_lookup_error_is_denied(self):
        repo = MagicMock()
        repo.get_subscription_status.side_effect = ConnectionError("db down")
        assert SubscriptionGate(repo).is_processable("c1") is False

    def test_lookup_errors_are_not_cached(self):
        repo = MagicMock()
        repo.get_subscription_status.side_effect = [ConnectionError("db down"), "active"]
        gate = SubscriptionGate(repo)
        assert gate.is_processable("c1") is False
        assert gate.is_processable("c1") is True

    def test_non_string_status_is_denied(self):
        repo = MagicMock()
        repo.get_subscription_status.return_value = {"status": "active"}
        assert SubscriptionGate(repo).is_processable("c1") is False

    def test_status_is_cached_until_invalidated(self, repo):
        repo.set_subscription("c1", "active")
        gate = SubscriptionGate(repo)
        assert gate.is_processable("c1") is True

        repo.set_subscription("c1", "canceled")
        assert gate.is_processable("c1") is True  # served from cache

        gate.invalidate("c1")
        assert gate.is_processable("c1") is False

    def test_zero_ttl_always_reads_through(self, repo):
        repo.set_subscription("c1", "active")
        gate = SubscriptionGate(repo, cache=LRUCache(ttl_seconds=0))
        assert gate.is_processable("c1") is True
        repo.set_subscription("c1", "canceled")
        assert gate.is_processable("c1") is False


class TestProcessableClinicIds:
    def test_filters_in_one_round_trip(self, repo):
        repo.set_subscription("c1", "active")
        repo.set_subscription("c2", "canceled")
        repo.set_subscription("c3", "past_due")
        gate = SubscriptionGate(repo)

        assert gate.processable_clinic_ids(["c1", "c2", "c3", "c4"]) == {"c1", "c3"}

    def test_batch_error_denies_everything(self):
        repo = MagicMock()
        repo.get_subscription_statuses.side_effect = TimeoutError()
        assert SubscriptionGate(repo).processable_clinic_ids(["c1", "c2"]) == set()

    def test_malformed_statuses_are_denied(self):
        repo = MagicMock()
        repo.get_subscription_statuses.return_value = {
            "c1": ["active"], "c2": "active", "c3": {"status": "active"},
        }
        gate = SubscriptionGate(repo)
        assert gate.processable_clinic_ids(["c1", "c2", "c3"]) == {"c2"}
        # The malformed row is cached as denied, not as its raw value
        assert gate.is_processable("c1") is False
        repo.get_subscription_status.assert_not_called()

    def test_empty_input_skips_storage(self):
        repo = MagicMock()
        assert SubscriptionGate(repo).processable_clinic_ids([]) == set()
        repo.get_subscription_statuses.assert_not_called()


class TestReadBoolSetting:
    @pytest.mark.parametrize(
        "settings",
        [
            None,
            "auto_billing",
            ["auto_billing"],
            42,
            {},
            {"auto_billing": "true"},
            {"auto_billing": 1},
            {"auto_billing": None},
            {"auto_billing": {"enabled": True}},
        ],
    )
    def test_drifted_shapes_read_false(self, settings):
        assert read_bool_setting(settings, "auto_billing") is False

    def test_real_true_reads_true(self):
        assert read_bool_setting({"auto_billing": True, "other": "x"}, "auto_billing") is True


class TestFeatureFlags:
    def test_auto_billing_enabled(self, repo):
        repo.set_module_config(ModuleConfig("c1", "billing", settings={"auto_billing": True}))
        assert SubscriptionGate(repo).is_auto_billing_enabled("c1") is True

    def test_auto_billing_absent(self, repo):
        repo.set_module_config(ModuleConfig("c1", "billing", settings={"reminders": True}))
        assert SubscriptionGate(repo).is_auto_billing_enabled("c1") is False

    def test_no_module_config(self, repo):
        assert SubscriptionGate(repo).is_feature_enabled("c1", "billing", "auto_billing") is False

    def test_settings_lookup_error_reads_false(self):
        repo = MagicMock()
        repo.get_module_settings.side_effect = RuntimeError("bad json")
        assert SubscriptionGate(repo).is_auto_billing_enabled("c1") is False

    def test_missing_settings_are_cached(self):
        repo = MagicMock()
        repo.get_module_settings.return_value = None
        gate = SubscriptionGate(repo)
        gate.is_auto_billing_enabled("c1")
        gate.is_auto_billing_enabled("c1")
        assert repo.get_module_settings.call_count == 1
