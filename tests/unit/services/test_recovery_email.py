"""Unit tests for the recovery email notifier."""

import uuid
from unittest.mock import AsyncMock, patch

import pytest

from reconciler.services.email.recovery_email import (
    RECOVERY_EMAIL_TAG,
    RecoveryEmailNotifier,
    _build_html,
    _build_text,
)

POSTMARK = "reconciler.services.email.recovery_email.postmark_service"


class TestSendRecoveryEmail:
    def setup_method(self):
        self.notifier = RecoveryEmailNotifier()

    @pytest.mark.asyncio
    @patch("reconciler.services.email.recovery_email.settings")
    @patch(POSTMARK)
    async def test_sends_with_billing_link(self, mock_postmark, mock_settings):
        mock_settings.frontend_url = "https://app.example.com/"
        mock_postmark.send = AsyncMock(return_value=True)

        sent = await self.notifier.send_recovery_email(uuid.uuid4(), "owner@example.com", "Acme")

        assert sent is True
        kwargs = mock_postmark.send.call_args.kwargs
        assert kwargs["to"] == "owner@example.com"
        assert kwargs["subject"] == "Action needed: payment failed for Acme"
        assert kwargs["tag"] == RECOVERY_EMAIL_TAG
        assert "https://app.example.com/settings/billing?recovery=1" in kwargs["text_body"]
        assert "https://app.example.com/settings/billing?recovery=1" in kwargs["html_body"]

    @pytest.mark.asyncio
    @patch(POSTMARK)
    async def test_defaults_workspace_name(self, mock_postmark):
        mock_postmark.send = AsyncMock(return_value=True)

        await self.notifier.send_recovery_email(uuid.uuid4(), "owner@example.com")

        assert mock_postmark.send.call_args.kwargs["subject"].endswith("your workspace")

    @pytest.mark.asyncio
    @patch(POSTMARK)
    async def test_returns_false_when_provider_rejects(self, mock_postmark):
        mock_postmark.send = AsyncMock(return_value=False)

        sent = await self.notifier.send_recovery_email(uuid.uuid4(), "owner@example.com", "Acme")

        assert sent is False


class TestRendering:
    def test_html_escapes_workspace_name(self):
        html = _build_html("<script>Acme</script>", "https://app.example.com/x")
        assert "<script>" not in html
        assert "&lt;script&gt;Acme&lt;/script&gt;" in html

    def test_text_body_has_link(self):
        text = _build_text("Acme", "https://app.example.com/x")
        assert "Acme" in text
        assert "https://app.example.com/x" in text
