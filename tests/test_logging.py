"""Tests for structured logging setup and context binding."""

from __future__ import annotations

import pytest
import structlog

from llm_strategy.telemetry import (
    bind_task_context,
    bind_tenant_context,
    clear_context,
    configure_logging,
    selection_context,
)


@pytest.fixture
def reset_structlog():
    yield
    structlog.reset_defaults()


class TestContextBinding:
    def test_bind_tenant_context(self):
        bind_tenant_context("org-42")
        assert structlog.contextvars.get_contextvars()["organization_id"] == "org-42"

    def test_bind_task_context(self):
        bind_task_context("pr-pitch", agent_type="pr_pitch_agent")

        context = structlog.contextvars.get_contextvars()
        assert context["task_category"] == "pr-pitch"
        assert context["agent_type"] == "pr_pitch_agent"

    def test_agent_type_optional(self):
        bind_task_context("seo")
        assert "agent_type" not in structlog.contextvars.get_contextvars()

    def test_rebinding_without_agent_type_drops_previous_one(self):
        bind_task_context("pr-pitch", agent_type="pr_pitch_agent")
        bind_task_context("short-form")

        context = structlog.contextvars.get_contextvars()
        assert context["task_category"] == "short-form"
        assert "agent_type" not in context

    def test_clear_context(self):
        bind_tenant_context("org-42")
        clear_context()
        assert structlog.contextvars.get_contextvars() == {}


class TestSelectionContext:
    def test_fields_bound_inside_block(self):
        with selection_context("org-a", "pr-pitch", agent_type="pr_pitch_agent"):
            assert structlog.contextvars.get_contextvars() == {
                "organization_id": "org-a",
                "task_category": "pr-pitch",
                "agent_type": "pr_pitch_agent",
            }

        assert structlog.contextvars.get_contextvars() == {}

    def test_previous_context_restored(self):
        structlog.contextvars.bind_contextvars(request_id="req-1", organization_id="outer")

        with selection_context("org-a", "seo"):
            assert structlog.contextvars.get_contextvars()["organization_id"] == "org-a"

        assert structlog.contextvars.get_contextvars() == {
            "request_id": "req-1",
            "organization_id": "outer",
        }

    def test_context_unwound_on_error(self):
        with pytest.raises(RuntimeError):
            with selection_context("org-a", "seo", agent_type="seo_agent"):
                raise RuntimeError("boom")

        assert structlog.contextvars.get_contextvars() == {}


class TestConfigureLogging:
    @pytest.mark.parametrize("json_logs", [True, False])
    def test_configures_structlog(self, reset_structlog, json_logs):
        configure_logging(json_logs=json_logs, log_level="DEBUG")

        assert structlog.is_configured()
        renderer = structlog.get_config()["processors"][-1]
        expected = structlog.processors.JSONRenderer if json_logs else structlog.dev.ConsoleRenderer
        assert isinstance(renderer, expected)
