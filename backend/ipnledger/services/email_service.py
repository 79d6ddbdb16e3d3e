"""Email service - customer and owner transactional emails"""
import logging
from typing import Optional

import resend

from ipnledger.core.config import settings
from ipnledger.models import Customer, Product, ProductDelivery, ProductOrder
from ipnledger.utils.templates import (
    render_delivery_email, render_sale_email, render_receipt_email,
    render_renewal_email, render_refused_email, render_member_only_email
)

logger = logging.getLogger(__name__)


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
    if not to:
        logger.warning(f"No recipient for email '{subject}'; skipping")
        return False

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

        # Resend returns a dict with 'id' on success (older clients return an object)
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


def _recipient(customer: Optional[Customer]) -> Optional[str]:
    if customer is None:
        return None
    return customer.cust_email or customer.cust_pay_email


def send_delivery_email(customer: Customer, product: Product, order: ProductOrder,
                        delivery: ProductDelivery) -> bool:
    """Deliver the product (email body, download link or redirect link)"""
    subject, html = render_delivery_email(customer, product, order, delivery)
    return _send_email(_recipient(customer), subject, html)


def send_owner_sale_email(product: Product, customer: Optional[Customer], order: ProductOrder) -> bool:
    subject, html = render_sale_email(product, customer, order)
    return _send_email(product.owner_email, subject, html)


def send_subscription_receipt(customer: Customer, product: Product, order: ProductOrder) -> bool:
    subject, html = render_receipt_email(customer, product, order)
    return _send_email(_recipient(customer), subject, html)


def send_renewal_email(customer: Customer, product: Product, order: ProductOrder) -> bool:
    subject, html = render_renewal_email(customer, product, order)
    return _send_email(_recipient(customer), subject, html)


def send_refused_email(customer: Customer, product: Product) -> bool:
    subject, html = render_refused_email(customer, product)
    return _send_email(_recipient(customer), subject, html)


def send_member_only_email(customer: Customer, product: Product) -> bool:
    subject, html = render_member_only_email(customer, product)
    return _send_email(_recipient(customer), subject, html)
