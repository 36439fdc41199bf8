"""Tests for webhook notifications."""

import json

import httpx as httpx_lib
import pytest

from maestro.models import RouterState, WorkflowOutcome
from maestro.notifier import Notifier


def _blocked():
    return WorkflowOutcome(workflow_id="wf-1", state=RouterState.BLOCKED,
                           reason="wf-1-t001: unknown report kind 'poem'",
                           error_kind="ParseError")


@pytest.mark.asyncio
async def test_sends_webhook(httpx_mock):
    """Sends correct webhook POST."""
    httpx_mock.add_response(status_code=200)

    notifier = Notifier(webhook_url="https://hook.example.com/cb",
                        events=["workflow.blocked"])
    await notifier.notify("workflow.blocked", _blocked())
    await notifier.close()

    req = httpx_mock.get_request()
    assert str(req.url) == "https://hook.example.com/cb"
    body = json.loads(req.content)
    assert body == {
        "event": "workflow.blocked",
        "workflow_id": "wf-1",
        "state": "blocked",
        "reason": "wf-1-t001: unknown report kind 'poem'",
        "error_kind": "ParseError",
    }


@pytest.mark.asyncio
async def test_filters_unsubscribed_events():
    """Events not in list → no request sent (no httpx_mock needed since no request)."""
    notifier = Notifier(webhook_url="https://hook.example.com/cb",
                        events=["workflow.terminated"])
    await notifier.notify("workflow.blocked", _blocked())
    await notifier.close()


@pytest.mark.asyncio
async def test_no_webhook_noop():
    """No webhook configured → silent noop."""
    notifier = Notifier(webhook_url="", events=["workflow.blocked"])
    await notifier.notify("workflow.blocked", _blocked())
    await notifier.close()


@pytest.mark.asyncio
async def test_webhook_failure_logged(httpx_mock, caplog):
    """Webhook failure → warning, no exception."""
    httpx_mock.add_exception(httpx_lib.ConnectError("unreachable"))
    notifier = Notifier(webhook_url="https://hook.example.com/cb",
                        events=["workflow.blocked"])
    await notifier.notify("workflow.blocked", _blocked())
    await notifier.close()
    assert "Webhook workflow.blocked for wf-1 failed" in caplog.text
