"""
Unit Tests for the Security Gate

Tests keyword classification, confirmation round-trips, failure of the
confirmation channel and the audit trail.
"""

import logging
from unittest.mock import AsyncMock, patch

import pytest

from src.agents.web_agent.security import ConfirmationUnavailable, SecurityGate, console_confirm


class TestClassification:

    @pytest.mark.parametrize("description", [
        "Delete the selected email",
        "Proceed to checkout",
        "Click Log Out",
        "Reset all settings",
        "close account permanently",
    ])
    def test_destructive_keywords(self, description):
        assert SecurityGate.is_destructive(description) is True

    def test_benign_description(self):
        assert SecurityGate.is_destructive("Open the images tab") is False

    def test_severity_follows_keywords(self):
        gate = SecurityGate(confirm=AsyncMock(return_value=True))
        assert gate.build_request("click", "Delete draft").severity == "high"
        assert gate.build_request("click", "Submit the form").severity == "medium"

    def test_request_carries_target(self):
        gate = SecurityGate(confirm=AsyncMock(return_value=True))
        request = gate.build_request("click", "Pay now", target="#pay")
        assert request.target == "#pay"
        assert request.kind == "click"


class TestConfirmation:

    @pytest.mark.asyncio
    async def test_approval_is_returned(self, approve_all):
        gate = SecurityGate(confirm=approve_all)
        request = gate.build_request("click", "Delete draft")
        assert await gate.request_confirmation(request) is True
        approve_all.assert_awaited_once_with(request)

    @pytest.mark.asyncio
    async def test_denial_is_returned(self, deny_all):
        gate = SecurityGate(confirm=deny_all)
        assert await gate.request_confirmation(gate.build_request("click", "Delete")) is False

    @pytest.mark.asyncio
    async def test_closed_channel_raises(self):
        gate = SecurityGate(confirm=AsyncMock(side_effect=EOFError()))
        with pytest.raises(ConfirmationUnavailable):
            await gate.request_confirmation(gate.build_request("click", "Delete"))

    @pytest.mark.asyncio
    async def test_confirmer_error_raises_unavailable(self):
        gate = SecurityGate(confirm=AsyncMock(side_effect=RuntimeError("approval service down")))
        with pytest.raises(ConfirmationUnavailable, match="approval service down"):
            await gate.request_confirmation(gate.build_request("click", "Delete"))

    @pytest.mark.asyncio
    async def test_console_confirm_accepts_yes(self):
        gate = SecurityGate()
        with patch("builtins.input", return_value="YES"):
            assert await console_confirm(gate.build_request("click", "Delete")) is True

    @pytest.mark.asyncio
    async def test_console_confirm_rejects_anything_else(self):
        gate = SecurityGate()
        with patch("builtins.input", return_value="maybe"):
            assert await console_confirm(gate.build_request("click", "Delete")) is False

    @pytest.mark.asyncio
    async def test_console_confirm_eof(self):
        gate = SecurityGate()
        with patch("builtins.input", side_effect=EOFError()):
            with pytest.raises(ConfirmationUnavailable):
                await console_confirm(gate.build_request("click", "Delete"))


class TestAuditLog:

    def test_records_are_appended(self):
        gate = SecurityGate(confirm=AsyncMock(return_value=True))
        gate.log_action("click", "Delete draft", approved=True)
        gate.log_action("click", "Pay", approved=False)
        assert [(r.kind, r.approved) for r in gate.audit] == [("click", True), ("click", False)]

    def test_audit_line_is_logged(self, caplog):
        gate = SecurityGate(confirm=AsyncMock(return_value=True))
        with caplog.at_level(logging.INFO, logger="src.agents.web_agent.security.audit"):
            gate.log_action("navigate", "Sign out", approved=False)
        assert "[SECURITY LOG] DENIED - Type: navigate, Description: Sign out" in caplog.text
