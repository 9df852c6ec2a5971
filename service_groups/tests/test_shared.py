"""
Tests for the shared config, errors and metrics helpers.
"""

import pytest
from prometheus_client import CollectorRegistry

from shared.config import get_config
from shared.errors import (
    AlreadyExistsError, AlreadyHasGroupError, GroupsException, InvalidGroupNameError,
    InvalidPrefixError, NotFoundError, StorageError,
)
from shared.logging import add_component, add_subject_context, subject_context, subject_var
from shared.metrics import get_metrics_collector


class TestErrors:
    """Test cases for error kinds."""

    def test_distinct_codes(self):
        """Test every error kind carries its own message key."""
        errors = [
            NotFoundError.group("vip"),
            NotFoundError.user("u1"),
            AlreadyExistsError("vip"),
            AlreadyHasGroupError("u1", "vip"),
            InvalidGroupNameError("a.b"),
            InvalidPrefixError("", 1, 16),
            StorageError("save_group", "boom"),
        ]

        codes = [error.code for error in errors]
        assert len(set(codes)) == len(codes)
        assert all(isinstance(error, GroupsException) for error in errors)

    def test_to_response(self):
        """Test conversion to the response model."""
        response = AlreadyHasGroupError("u1", "vip").to_response()

        assert response.code == "USER_GROUP_ALREADY_HAS"
        assert response.details == {"subject": "u1", "group": "vip"}

    def test_storage_error_context(self):
        """Test storage errors keep the failed operation."""
        error = StorageError("delete_group", "timeout", {"group": "vip"})

        assert error.operation == "delete_group"
        assert error.details == {"operation": "delete_group", "group": "vip"}
        assert str(error) == "delete_group: timeout"


class TestConfig:
    """Test cases for configuration."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("GROUPS_STORAGE_BACKEND", raising=False)
        config = get_config()

        assert config.service_name == "groups"
        assert config.storage_backend == "memory"
        assert config.storage_timeout_seconds == 10.0

    def test_environment_overrides(self, monkeypatch):
        """Test GROUPS_ prefixed variables are read."""
        monkeypatch.setenv("GROUPS_STORAGE_TIMEOUT_SECONDS", "2.5")
        monkeypatch.setenv("GROUPS_LOG_LEVEL", "debug")

        config = get_config()

        assert config.storage_timeout_seconds == 2.5
        assert config.log_level == "debug"

    def test_invalid_timeout(self):
        with pytest.raises(ValueError):
            get_config(storage_timeout_seconds=0)


class TestMetrics:
    """Test cases for the metrics collector."""

    def test_counters_and_gauges(self):
        registry = CollectorRegistry()
        metrics = get_metrics_collector("groups", registry)

        metrics.increment_counter("group_resolutions_total", result="memo_hit")
        metrics.set_gauge("loaded_subjects", 3, subject_type="user")
        metrics.increment_counter("unknown_metric", result="ignored")

        assert registry.get_sample_value("group_resolutions_total", {"result": "memo_hit"}) == 1.0
        assert registry.get_sample_value("loaded_subjects", {"subject_type": "user"}) == 3.0

    def test_time_operation(self):
        registry = CollectorRegistry()
        metrics = get_metrics_collector("groups", registry)

        with metrics.time_operation("storage_operation_duration_seconds", operation="save_user"):
            pass

        assert registry.get_sample_value(
            "storage_operation_duration_seconds_count", {"operation": "save_user"}
        ) == 1.0


class TestLogging:
    """Test cases for log processors."""

    def test_subject_context_is_scoped(self):
        """Test the subject binding is reset after the block."""
        with subject_context("group:vip"):
            event = add_subject_context(None, "info", {"event": "Group saved"})
            explicit = add_subject_context(None, "info", {"event": "x", "subject": "u2"})

        assert event["subject"] == "group:vip"
        assert explicit["subject"] == "u2"
        assert subject_var.get() is None

    def test_add_component(self):
        event = add_component(None, "info", {"logger": "groups.persistence.memory"})

        assert event["component"] == "persistence.memory"
