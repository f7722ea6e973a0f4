"""
Billing Notification Service.

WHAT:
    Sends transactional billing emails through Resend:
    - Password setup for accounts created from an affiliate purchase
    - Welcome + temporary password for payment-first (ad funnel) signups
    - Subscription / add-on confirmation and renewal
    - Affiliate congratulations when a commission is put on hold
    - Commission released when held funds become available

WHY:
    Every email here is best effort. Callers queue these as side effects that
    run after the payment transaction commits, so a failure is logged and
    returned as NotificationResult(success=False), never raised.

DESIGN:
    - Simple HTML with inline styles + plain text fallbacks
    - Settings integration for API key / from address / frontend URL
    - Graceful fallback when Resend is not configured (logs what would be sent)

REFERENCES:
    - Resend Python SDK: https://resend.com/docs/api-reference/emails/send-email
"""

import html as html_lib
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

import resend

logger = logging.getLogger(__name__)


# =============================================================================
# EMAIL TEMPLATES
# =============================================================================

EMAIL_HEADER = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{title}</title>
</head>
<body style="margin: 0; padding: 0; background-color: #f9fafb; font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Arial, sans-serif;">
    <table role="presentation" style="width: 100%; border-collapse: collapse;">
        <tr>
            <td align="center" style="padding: 40px 20px;">
                <table role="presentation" style="width: 100%; max-width: 600px; border-collapse: collapse; background-color: #ffffff; border-radius: 12px;">
                    <tr>
                        <td style="padding: 32px;">
                            <h1 style="margin: 0 0 16px; font-size: 22px; color: #111827;">{title}</h1>
"""

EMAIL_FOOTER = """
                        </td>
                    </tr>
                    <tr>
                        <td style="padding: 24px 32px; border-top: 1px solid #e5e7eb; color: #6b7280; font-size: 13px;">
                            <p style="margin: 0;">Questions about billing? Reply to this email and we'll help.</p>
                            <p style="margin: 8px 0 0;"><a href="{frontend_url}" style="color: #3b82f6; text-decoration: none;">{frontend_url}</a></p>
                        </td>
                    </tr>
                </table>
            </td>
        </tr>
    </table>
</body>
</html>
"""

BUTTON = (
    '<p style="margin: 24px 0;"><a href="{url}" style="background-color: #3b82f6; color: #ffffff; '
    'padding: 12px 20px; border-radius: 8px; text-decoration: none; font-weight: 600;">{label}</a></p>'
)


def _paragraph(text: str) -> str:
    return f'<p style="margin: 0 0 12px; color: #374151; font-size: 15px; line-height: 1.5;">{text}</p>'


def _greeting(first_name: Optional[str]) -> str:
    return f"Hi {first_name}," if first_name else "Hi there,"


def _format_date(value: Optional[datetime]) -> str:
    return value.strftime("%B %d, %Y") if value else "lifetime"


def _format_money(value) -> str:
    return f"${Decimal(str(value)):,.2f}"


@dataclass
class NotificationResult:
    """
    Result of sending a notification.

    Attributes:
        success: Whether notification was sent
        message_id: Provider message ID if successful
        error: Error message if failed
        recipients: List of recipients
    """

    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    recipients: Optional[List[str]] = None


class BillingNotificationService:
    """
    Service for sending billing emails.

    Usage:
        service = BillingNotificationService.from_settings(get_settings())
        service.send_subscription_confirmation(email=..., plan_name="BUSINESS", ...)
    """

    def __init__(
        self,
        resend_api_key: Optional[str] = None,
        from_email: str = "Funnels <billing@funnels.app>",
        frontend_url: str = "http://localhost:3000",
    ):
        self.from_email = from_email
        self.frontend_url = frontend_url.rstrip("/")

        self.resend_client = None
        if resend_api_key:
            resend.api_key = resend_api_key
            self.resend_client = resend
            logger.info("[EMAIL] Resend client initialized")

    @classmethod
    def from_settings(cls, settings) -> "BillingNotificationService":
        return cls(
            resend_api_key=settings.RESEND_API_KEY,
            from_email=settings.RESEND_FROM_EMAIL,
            frontend_url=settings.FRONTEND_URL,
        )

    # =========================================================================
    # TEMPLATED EMAILS
    # =========================================================================

    def send_password_setup(self, email: str, first_name: Optional[str], setup_url: str) -> NotificationResult:
        title = "Set up your password"
        body = (
            _paragraph(_greeting(first_name))
            + _paragraph("Your payment went through and your account is ready. Choose a password to sign in.")
            + BUTTON.format(url=html_lib.escape(setup_url, quote=True), label="Set my password")
            + _paragraph("This link expires in 3 days.")
        )
        text = (
            f"{_greeting(first_name)}\n\nYour payment went through and your account is ready.\n"
            f"Set your password here: {setup_url}\n\nThis link expires in 3 days."
        )
        return self._send_email([email], title, self._wrap(title, body), text)

    def send_signup_welcome(
        self,
        email: str,
        first_name: Optional[str],
        plan_label: str,
        username: str,
        temporary_password: str,
    ) -> NotificationResult:
        """Welcome email for payment-first signups, includes the temporary password."""
        title = f"Welcome to your {plan_label}"
        login_url = f"{self.frontend_url}/login"
        body = (
            _paragraph(_greeting(first_name))
            + _paragraph(f"Thanks for purchasing the {html_lib.escape(plan_label)}. Your account has been created.")
            + _paragraph(
                f"Email: <strong>{html_lib.escape(email)}</strong><br>"
                f"Username: <strong>{html_lib.escape(username)}</strong><br>"
                f"Temporary password: <strong>{html_lib.escape(temporary_password)}</strong>"
            )
            + BUTTON.format(url=login_url, label="Sign in")
            + _paragraph("Please change your password after your first sign in.")
        )
        text = (
            f"{_greeting(first_name)}\n\nThanks for purchasing the {plan_label}. Your account has been created.\n"
            f"Email: {email}\nUsername: {username}\nTemporary password: {temporary_password}\n\n"
            f"Sign in at {login_url} and change your password."
        )
        return self._send_email([email], title, self._wrap(title, body), text)

    def send_subscription_confirmation(
        self,
        email: str,
        first_name: Optional[str],
        plan_name: str,
        ends_at: Optional[datetime],
        renewal: bool = False,
    ) -> NotificationResult:
        title = "Your subscription was renewed" if renewal else "Your subscription is active"
        plan = html_lib.escape(plan_name.title())
        lead = (
            f"Your {plan} subscription has been renewed."
            if renewal
            else f"Your {plan} subscription is now active."
        )
        body = (
            _paragraph(_greeting(first_name))
            + _paragraph(lead)
            + _paragraph(f"Current period ends: <strong>{_format_date(ends_at)}</strong>")
            + BUTTON.format(url=f"{self.frontend_url}/dashboard", label="Go to dashboard")
        )
        text = f"{_greeting(first_name)}\n\n{lead}\nCurrent period ends: {_format_date(ends_at)}"
        return self._send_email([email], title, self._wrap(title, body), text)

    def send_addon_confirmation(
        self,
        email: str,
        first_name: Optional[str],
        addon_type: str,
        ends_at: Optional[datetime],
        renewal: bool = False,
    ) -> NotificationResult:
        addon_name = addon_type.replace("_", " ").title()
        title = f"{addon_name} renewed" if renewal else f"{addon_name} activated"
        body = (
            _paragraph(_greeting(first_name))
            + _paragraph(f"Your {html_lib.escape(addon_name)} add-on is active until <strong>{_format_date(ends_at)}</strong>.")
        )
        text = f"{_greeting(first_name)}\n\nYour {addon_name} add-on is active until {_format_date(ends_at)}."
        return self._send_email([email], title, self._wrap(title, body), text)

    def send_affiliate_congratulations(
        self,
        email: str,
        first_name: Optional[str],
        commission_amount,
        held_until: datetime,
        partner_level: int,
        promoted: bool = False,
    ) -> NotificationResult:
        title = "You earned a commission"
        amount = _format_money(commission_amount)
        body = (
            _paragraph(_greeting(first_name))
            + _paragraph(f"Someone just bought through your link. You earned <strong>{amount}</strong>.")
            + _paragraph(f"The commission is on hold until {_format_date(held_until)} and then moves to your available balance.")
        )
        text = (
            f"{_greeting(first_name)}\n\nSomeone just bought through your link. You earned {amount}.\n"
            f"It is on hold until {_format_date(held_until)}."
        )
        if promoted:
            body += _paragraph(f"You've also been promoted to partner level <strong>{partner_level}</strong>.")
            text += f"\nYou've been promoted to partner level {partner_level}."
        return self._send_email([email], title, self._wrap(title, body), text)

    def send_commission_released(
        self,
        email: str,
        first_name: Optional[str],
        total_amount,
        payment_count: int,
        available_balance,
    ) -> NotificationResult:
        title = "Your commissions are available"
        amount = _format_money(total_amount)
        balance = _format_money(available_balance)
        noun = "commission" if payment_count == 1 else "commissions"
        body = (
            _paragraph(_greeting(first_name))
            + _paragraph(f"{payment_count} {noun} totalling <strong>{amount}</strong> finished the hold period.")
            + _paragraph(f"Available balance: <strong>{balance}</strong>")
            + BUTTON.format(url=f"{self.frontend_url}/affiliate", label="View balance")
        )
        text = (
            f"{_greeting(first_name)}\n\n{payment_count} {noun} totalling {amount} finished the hold period.\n"
            f"Available balance: {balance}"
        )
        return self._send_email([email], title, self._wrap(title, body), text)

    # =========================================================================
    # EMAIL CHANNEL
    # =========================================================================

    def _wrap(self, title: str, body: str) -> str:
        return (
            EMAIL_HEADER.format(title=html_lib.escape(title))
            + body
            + EMAIL_FOOTER.format(frontend_url=self.frontend_url)
        )

    def _send_email(self, to: List[str], subject: str, html: str, text: str) -> NotificationResult:
        """Send email via Resend; never raises."""
        if not self.resend_client:
            logger.warning(f"[EMAIL] Resend not configured, would send: {subject} to {to}")
            return NotificationResult(
                success=True,
                message_id="mock-" + str(abs(hash(subject)))[:8],
                recipients=to,
            )

        try:
            response = self.resend_client.Emails.send({
                "from": self.from_email,
                "to": to,
                "subject": subject,
                "html": html,
                "text": text,
            })

            message_id = response.get("id") if isinstance(response, dict) else getattr(response, "id", None)
            logger.info(f"[EMAIL] Sent: {subject} to {to}, id={message_id}")

            return NotificationResult(success=True, message_id=message_id, recipients=to)

        except Exception as e:
            logger.exception(f"[EMAIL] Failed to send {subject!r} to {to}: {e}")
            return NotificationResult(success=False, error=str(e), recipients=to)
