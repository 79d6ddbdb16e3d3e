"""Template utilities for customer and owner emails"""
from html import escape
from typing import Dict, Tuple

DEFAULT_DELIVERY_SUBJECT = "Your purchase of {product_name}"
DEFAULT_DELIVERY_BODY = """
    <p>Hi {first_name},</p>
    <p>Thank you for purchasing <strong>{product_name}</strong>.</p>
    <p>{access}</p>
    """


def replace_template_placeholders(template: str, values: Dict[str, str]) -> str:
    """Replace {placeholder} tokens with values; unknown tokens are left as-is"""
    result = template
    for key, value in values.items():
        result = result.replace('{' + key + '}', value)
    return result


def _values(customer, product, order) -> Dict[str, str]:
    return {
        "first_name": escape(customer.cust_fname or "") if customer else "",
        "last_name": escape(customer.cust_lname or "") if customer else "",
        "email": escape(customer.cust_pay_email) if customer else "",
        "product_name": escape(product.name),
        "order_id": str(order.id) if order else "",
        "amount": f"{order.amount}" if order else "",
        "currency": order.currency if order else "",
    }


def _access_line(delivery) -> str:
    if delivery.delivery_method == "file_upload" and delivery.file_url:
        return f'<a href="{escape(delivery.file_url)}">Download your file</a>'
    if delivery.delivery_method == "redirect_url" and delivery.redirect_url:
        return f'<a href="{escape(delivery.redirect_url)}">Access your purchase</a>'
    if delivery.delivery_method == "membership":
        return "Your membership access is ready. Log in with this email address."
    return ""


def render_delivery_email(customer, product, order, delivery) -> Tuple[str, str]:
    """
    Build the delivery email for a paid order.

    The owner's configured subject/body win; otherwise a default body with
    the download or access link is used.

    Returns:
        tuple: (subject, html)
    """
    values = _values(customer, product, order)
    values["access"] = _access_line(delivery)
    values["download_url"] = escape(delivery.file_url or "")
    values["redirect_url"] = escape(delivery.redirect_url or "")

    subject = replace_template_placeholders(delivery.email_subject or DEFAULT_DELIVERY_SUBJECT, values)
    body = replace_template_placeholders(delivery.email_body or DEFAULT_DELIVERY_BODY, values)
    return subject, body


def render_sale_email(product, customer, order) -> Tuple[str, str]:
    values = _values(customer, product, order)
    subject = f"New sale: {product.name}"
    html = replace_template_placeholders("""
    <p>You made a sale!</p>
    <p><strong>{product_name}</strong> was bought by {first_name} {last_name} ({email}).</p>
    <p>Order #{order_id}: {amount} {currency}</p>
    """, values)
    return subject, html


def render_receipt_email(customer, product, order) -> Tuple[str, str]:
    values = _values(customer, product, order)
    subject = f"Your subscription to {product.name}"
    html = replace_template_placeholders("""
    <p>Hi {first_name},</p>
    <p>Your subscription to <strong>{product_name}</strong> is active.</p>
    <p>Amount charged: {amount} {currency}</p>
    """, values)
    return subject, html


def render_renewal_email(customer, product, order) -> Tuple[str, str]:
    values = _values(customer, product, order)
    subject = f"Your subscription to {product.name} was renewed"
    html = replace_template_placeholders("""
    <p>Hi {first_name},</p>
    <p>Your subscription to <strong>{product_name}</strong> has been renewed.</p>
    <p>Amount charged: {amount} {currency}</p>
    """, values)
    return subject, html


def render_refused_email(customer, product) -> Tuple[str, str]:
    values = _values(customer, product, None)
    subject = f"About your purchase of {product.name}"
    html = replace_template_placeholders("""
    <p>Hi {first_name},</p>
    <p>We could not deliver <strong>{product_name}</strong> to this account.</p>
    <p>Please contact the seller for assistance.</p>
    """, values)
    return subject, html


def render_member_only_email(customer, product) -> Tuple[str, str]:
    values = _values(customer, product, None)
    subject = f"{product.name} is available to members only"
    html = replace_template_placeholders("""
    <p>Hi {first_name},</p>
    <p><strong>{product_name}</strong> is only available to existing members.</p>
    <p>Join the membership site first, then your access will be granted.</p>
    """, values)
    return subject, html
