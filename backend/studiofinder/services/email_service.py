"""Email service - transactional notifications via Resend

Sending is best effort: every public function returns a bool and never raises.
"""
import logging
from html import escape
from typing import Any, Callable, Dict

import resend

from studiofinder.core.config import settings
from studiofinder.core.metrics import notifications_counter

logger = logging.getLogger(__name__)

TEMPLATE_PAYMENT_SUCCESS = "payment-success"
TEMPLATE_FEATURED_UPGRADE = "featured-upgrade"


def _send_email(to: str, subject: str, html: str) -> bool:
    """
    Internal helper function to send email via Resend API.

    Args:
        to: Recipient email address
        subject: Email subject
        html: HTML email content

    Returns:
        bool: True on success, False on failure
    """
    if not settings.RESEND_API_KEY:
        logger.warning("RESEND_API_KEY is not set; skipping email")
        return False

    try:
        resend.api_key = settings.RESEND_API_KEY

        response = resend.Emails.send(
            {
                "from": settings.RESEND_FROM_EMAIL,
                "to": to,
                "subject": subject,
                "html": html,
            }
        )

        # Resend returns dict with 'id' field on success
        email_id = None
        if isinstance(response, dict):
            email_id = response.get('id')
        elif hasattr(response, 'id'):
            email_id = response.id

        if email_id:
            logger.info(f"Email sent successfully to {to} (id: {email_id})")
            return True
        else:
            logger.error(f"Email send returned invalid response: {response} (type: {type(response)})")
            return False

    except Exception as exc:
        logger.error(f"Failed to send email to {to}: {exc}", exc_info=True)
        return False


def _render_payment_success(v: Dict[str, Any]) -> tuple[str, str]:
    html = f"""
    <h1>Payment received</h1>
    <p>Hi {escape(str(v.get('customer_name') or 'there'))},</p>
    <p>We've successfully processed your payment. Your membership is now active.</p>
    <table>
      <tr><td>Amount</td><td>{escape(str(v.get('amount', '')))} {escape(str(v.get('currency', '')).upper())}</td></tr>
      <tr><td>Invoice</td><td>{escape(str(v.get('invoice_number', '')))}</td></tr>
      <tr><td>Plan</td><td>{escape(str(v.get('plan_name', '')))}</td></tr>
      <tr><td>Next billing date</td><td>{escape(str(v.get('next_billing_date', '')))}</td></tr>
    </table>
    <p><a href="{settings.FRONTEND_URL}/dashboard">View dashboard</a></p>
    """
    return "Payment received", html


def _render_featured_upgrade(v: Dict[str, Any]) -> tuple[str, str]:
    html = f"""
    <h1>Your studio is now featured</h1>
    <p>Hi {escape(str(v.get('customer_name') or 'there'))},</p>
    <p>{escape(str(v.get('studio_name', 'Your studio')))} will appear in the featured
    section until {escape(str(v.get('featured_until', '')))}.</p>
    <p><a href="{settings.FRONTEND_URL}/dashboard">View dashboard</a></p>
    """
    return "Your studio is now featured", html


TEMPLATES: Dict[str, Callable[[Dict[str, Any]], tuple[str, str]]] = {
    TEMPLATE_PAYMENT_SUCCESS: _render_payment_success,
    TEMPLATE_FEATURED_UPGRADE: _render_featured_upgrade,
}


def send_templated_email(to: str, template_key: str, variables: Dict[str, Any]) -> bool:
    """Render a registered template and send it. Never raises."""
    outcome = "failed"
    try:
        renderer = TEMPLATES.get(template_key)
        if renderer is None:
            logger.error(f"Unknown email template '{template_key}'")
            return False
        if not to:
            logger.warning(f"No recipient for template '{template_key}'; skipping email")
            return False
        subject, html = renderer(variables)
        sent = _send_email(to, subject, html)
        outcome = "sent" if sent else "failed"
        return sent
    except Exception as exc:
        logger.error(f"Failed to render or send '{template_key}' to {to}: {exc}", exc_info=True)
        return False
    finally:
        notifications_counter.labels(template=template_key, outcome=outcome).inc()


def format_amount(amount_minor: int) -> str:
    """Minor units to a display string (2500 -> '25.00')"""
    return f"{(amount_minor or 0) / 100:.2f}"


def format_date(value) -> str:
    if value is None:
        return "Pending activation"
    return value.strftime("%d %B %Y")
