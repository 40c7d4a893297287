"""Payment recovery email (dunning notifier).

Renders the "update your payment method" email and hands it to the shared
PostmarkService. Throttling and audit logging are the caller's concern.
"""

import logging
import uuid as uuid_pkg
from html import escape as html_escape

from reconciler.config import settings
from reconciler.services.email.postmark import postmark_service

logger = logging.getLogger(__name__)

RECOVERY_EMAIL_TAG = "billing-recovery"


def _build_html(workspace_name: str, cta_url: str) -> str:
    """Build the HTML email body."""
    safe_name = html_escape(workspace_name)
    return f"""\
<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
</head>
<body style="margin: 0; padding: 0; background-color: #f4f4f5;
             font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Helvetica, Arial, sans-serif;">

  <table role="presentation" width="100%" cellpadding="0" cellspacing="0"
         style="background-color: #f4f4f5;">
    <tr>
      <td align="center" style="padding: 40px 16px;">

        <table role="presentation" width="100%" cellpadding="0" cellspacing="0"
               style="max-width: 520px; background-color: #ffffff;
                      border-radius: 8px; overflow: hidden;">

          <!-- Body -->
          <tr>
            <td style="padding: 36px 32px 32px;">

              <!-- Status pill -->
              <table role="presentation" cellpadding="0" cellspacing="0"
                     style="margin: 0 0 20px;">
                <tr>
                  <td style="background-color: #fef2f2; border: 1px solid #fecaca;
                             border-radius: 20px; padding: 5px 14px;">
                    <span style="font-size: 12px; font-weight: 600; color: #dc2626;
                                 letter-spacing: 0.3px;">
                      &#9679;&ensp;PAYMENT ISSUE
                    </span>
                  </td>
                </tr>
              </table>

              <h1 style="font-size: 22px; font-weight: 700; color: #18181b;
                         margin: 0 0 10px; line-height: 1.3;">
                We couldn't collect payment for {safe_name}
              </h1>
              <p style="font-size: 15px; color: #52525b; margin: 0 0 24px; line-height: 1.6;">
                Your subscription needs attention. Update your payment method
                to keep your plan and avoid losing access to paid features.
              </p>

              <!-- Primary CTA -->
              <table role="presentation" width="100%" cellpadding="0" cellspacing="0">
                <tr>
                  <td align="center">
                    <a href="{cta_url}"
                       style="display: inline-block; padding: 16px 48px;
                              font-size: 16px; font-weight: 600; color: #ffffff;
                              background-color: #18181b; text-decoration: none;
                              border-radius: 8px;">
                      Update payment method &rarr;
                    </a>
                  </td>
                </tr>
              </table>

            </td>
          </tr>

          <!-- Footer -->
          <tr>
            <td style="padding: 20px 32px; border-top: 1px solid #f4f4f5;
                       background-color: #fafafa;">
              <p style="font-size: 12px; color: #a1a1aa; margin: 0; line-height: 1.5;
                        text-align: center;">
                You're receiving this as the billing owner of {safe_name}.<br>
                These emails stop automatically once payment succeeds.
              </p>
            </td>
          </tr>

        </table>

      </td>
    </tr>
  </table>

</body>
</html>"""


def _build_text(workspace_name: str, cta_url: str) -> str:
    """Build the plain-text email body."""
    return (
        f"PAYMENT ISSUE\n\n"
        f"We couldn't collect payment for {workspace_name}.\n\n"
        f"Your subscription needs attention. Update your payment method to keep "
        f"your plan and avoid losing access to paid features:\n"
        f"{cta_url}\n\n"
        f"---\n"
        f"You're receiving this as the billing owner of {workspace_name}.\n"
        f"These emails stop automatically once payment succeeds."
    )


class RecoveryEmailNotifier:
    """Notifier used by the dunning state machine."""

    async def send_recovery_email(
        self,
        workspace_id: uuid_pkg.UUID,
        to_email: str,
        workspace_name: str | None = None,
    ) -> bool:
        """Send the recovery email. Returns whether the provider accepted it."""
        name = workspace_name or "your workspace"
        cta_url = f"{settings.frontend_url.rstrip('/')}/settings/billing?recovery=1"
        subject = f"Action needed: payment failed for {name}"

        sent = await postmark_service.send(
            to=to_email,
            subject=subject,
            html_body=_build_html(name, cta_url),
            text_body=_build_text(name, cta_url),
            tag=RECOVERY_EMAIL_TAG,
        )
        if not sent:
            logger.warning(f"[recovery-email] Delivery failed for workspace {workspace_id}")
        return sent


recovery_notifier = RecoveryEmailNotifier()
