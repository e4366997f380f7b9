import logging
import resend
from app.core.config import get_settings

logger = logging.getLogger(__name__)


def _format_amount(amount_cents: int, currency: str) -> str:
    symbol = "$" if currency.lower() == "usd" else f"{currency.upper()} "
    return f"{symbol}{amount_cents / 100:.2f}"


def _layout(title: str, greeting: str, body_html: str, button_label: str, button_url: str) -> str:
    return f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
</head>
<body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, 'Helvetica Neue', Arial, sans-serif; line-height: 1.6; color: #333; max-width: 600px; margin: 0 auto; padding: 20px;">
    <div style="background: linear-gradient(135deg, #6366f1 0%, #8b5cf6 100%); padding: 30px; border-radius: 10px 10px 0 0;">
        <h1 style="color: white; margin: 0; font-size: 24px;">{title}</h1>
    </div>
    <div style="background: #f9fafb; padding: 30px; border-radius: 0 0 10px 10px;">
        <p style="font-size: 16px; margin-top: 0;">{greeting}</p>
        {body_html}
        <div style="text-align: center; margin: 30px 0;">
            <a href="{button_url}"
               style="background: linear-gradient(135deg, #6366f1 0%, #8b5cf6 100%);
                      color: white;
                      padding: 14px 28px;
                      text-decoration: none;
                      border-radius: 8px;
                      font-weight: 600;
                      display: inline-block;">
                {button_label}
            </a>
        </div>
        <hr style="border: none; border-top: 1px solid #e5e7eb; margin: 20px 0;">
        <p style="font-size: 12px; color: #999; margin-bottom: 0;">
            Questions about your bill? Just reply to this email.
        </p>
    </div>
</body>
</html>
"""


class EmailService:
    """Billing notifications via Resend."""

    def __init__(self):
        settings = get_settings()
        self.api_key = settings.resend_api_key
        resend.api_key = self.api_key
        self.sender = settings.email_from
        self.web_app_url = settings.web_app_url

        if not self.api_key:
            logger.warning("RESEND_API_KEY is not set!")

    def _send(self, to: str, subject: str, html: str) -> bool:
        try:
            result = resend.Emails.send({
                "from": self.sender,
                "to": [to],
                "subject": subject,
                "html": html,
            })
            logger.info(f"Email '{subject}' sent to {to}: {result}")
            return True
        except Exception as e:
            logger.error(f"Failed to send '{subject}' to {to}: {e}")
            raise

    def send_payment_failed(
        self,
        to: str,
        amount_cents: int,
        currency: str,
        reason: str | None = None,
        last4: str | None = None,
    ) -> bool:
        """Tell the user a renewal charge failed and how long they keep access."""
        card = f"your card ending in {last4}" if last4 else "your card on file"
        body = f"""
        <p style="font-size: 16px;">
            We couldn't charge {card} for <strong>{_format_amount(amount_cents, currency)}</strong>.
            {reason or "The payment was declined."}
        </p>
        <p style="font-size: 14px; color: #666;">
            You'll keep access for 7 days while we retry. Update your payment method
            to avoid any interruption.
        </p>
        """
        html = _layout(
            "Your payment didn't go through",
            "Hi there,",
            body,
            "Update Payment Method",
            f"{self.web_app_url}/account/billing",
        )
        return self._send(to, "Action needed: your payment failed", html)

    def send_payment_action_required(
        self,
        to: str,
        amount_cents: int,
        currency: str,
        action_url: str | None,
    ) -> bool:
        """Ask the user to authenticate a pending charge (e.g. 3-D Secure)."""
        body = f"""
        <p style="font-size: 16px;">
            Your bank needs you to confirm a payment of
            <strong>{_format_amount(amount_cents, currency)}</strong> before it can go through.
        </p>
        """
        html = _layout(
            "Confirm your payment",
            "Hi there,",
            body,
            "Confirm Payment",
            action_url or f"{self.web_app_url}/account/billing",
        )
        return self._send(to, "Please confirm your payment", html)

    def send_renewal_receipt(
        self,
        to: str,
        amount_cents: int,
        currency: str,
        invoice_url: str | None,
    ) -> bool:
        body = f"""
        <p style="font-size: 16px;">
            Thanks for writing with us! We've renewed your subscription and charged
            <strong>{_format_amount(amount_cents, currency)}</strong>.
        </p>
        """
        html = _layout(
            "Your subscription has renewed",
            "Hi there,",
            body,
            "View Invoice",
            invoice_url or f"{self.web_app_url}/account/billing",
        )
        return self._send(to, "Your subscription has renewed", html)


# Singleton instance
_email_service: EmailService | None = None


def get_email_service() -> EmailService:
    """Get the email service singleton."""
    global _email_service
    if _email_service is None:
        _email_service = EmailService()
    return _email_service
