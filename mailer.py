"""
Order confirmation email, sent through Resend.
"""
import html
import logging
import os
from typing import Any, Dict, Optional

import resend

from errors import EmailDeliveryError

logger = logging.getLogger(__name__)

RESEND_API_KEY = os.getenv("RESEND_API_KEY")
ORDER_EMAIL_FROM = os.getenv("ORDER_EMAIL_FROM", "Storefront <orders@storefront.shop>")
STORE_NAME = os.getenv("STORE_NAME", "Storefront")


def _format_address(address: Optional[Dict[str, Any]]) -> str:
    if not address:
        return ""
    return html.escape(
        f"{address.get('street', '')}, {address.get('city', '')}, "
        f"{address.get('state', '')} {address.get('postal_code', '')}, {address.get('country', '')}"
    )


def _line_items(order: Dict[str, Any]):
    for item in order.get("items", []):
        product = item.get("product") or {}
        quantity = item.get("quantity") or 0
        price = float(product.get("price") or 0)
        yield product.get("name") or "Item", quantity, round(quantity * price, 2)


def build_order_email(email: str, order: Dict[str, Any]) -> Dict[str, Any]:
    order_id = order.get("_id")
    items_html = "".join(
        f'<li style="margin-bottom: 10px;">{html.escape(name)} x {qty} - ${line_total:.2f}</li>'
        for name, qty, line_total in _line_items(order)
    )
    payment_type = (order.get("payment_method") or {}).get("type", "")
    body = f"""
<html>
  <body style="font-family: Arial, sans-serif; color: #111; max-width: 600px; margin: 0 auto; padding: 20px;">
    <h1 style="color: #f0c14b;">Order Confirmed!</h1>
    <p>Thank you for your order, {html.escape(email.split("@")[0])}! Your order #{order_id} has been placed successfully.</p>
    <p><strong>PNR Code:</strong> {html.escape(order.get("pnr") or "-")}</p>
    <p><strong>Total:</strong> ${order.get("total", 0):.2f}</p>
    <p><strong>Payment Method:</strong> {html.escape(payment_type)}</p>
    <ul style="list-style: none; padding: 0;">{items_html}</ul>
    <h3>Shipping Address</h3>
    <p>{_format_address(order.get("shipping_address"))}</p>
    <h3>Billing Address</h3>
    <p>{_format_address(order.get("billing_address"))}</p>
    <p style="font-size: 12px; color: #999;">{html.escape(STORE_NAME)}</p>
  </body>
</html>"""
    text = (
        f"Thank you for your order! Order #{order_id} has been placed successfully.\n"
        f"Total: ${order.get('total', 0):.2f}\n"
        f"Items: {', '.join(name for name, _, _ in _line_items(order))}"
    )
    return {
        "from": ORDER_EMAIL_FROM,
        "to": [email],
        "subject": f"Order Confirmation #{order_id}",
        "html": body,
        "text": text,
    }


class Mailer:
    def __init__(self, api_key: Optional[str] = RESEND_API_KEY):
        self.api_key = api_key

    def send_order_confirmation(self, email: str, order: Dict[str, Any]) -> None:
        if not self.api_key:
            logger.warning("RESEND_API_KEY not set, skipping confirmation email for order %s", order.get("_id"))
            return
        payload = build_order_email(email, order)
        resend.api_key = self.api_key
        try:
            response = resend.Emails.send(payload)
        except Exception as e:
            logger.exception("Error sending order confirmation email to %s", email)
            raise EmailDeliveryError(f"Failed to send order confirmation email: {e}")
        if not isinstance(response, dict) or not response.get("id"):
            raise EmailDeliveryError(f"Failed to send order confirmation email: {response}")
        logger.info("Order confirmation email sent to %s", email)


_mailer = Mailer()


def get_mailer() -> Mailer:
    return _mailer
