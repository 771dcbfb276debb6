"""
Outcome Pages

Minimal HTML shown to the customer after the gateway hands control back.
Every interpolated value is escaped; transaction ids come from untrusted
redirects.
"""
from html import escape
from typing import Any, Optional

from ..models.payments import OrderRecord, OrderStatus

_PAGE = """<!DOCTYPE html>
<html>
  <head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{title}</title>
    <style>
      body {{ font-family: Arial, sans-serif; text-align: center; padding: 50px; background: {background}; margin: 0; }}
      h1 {{ color: {color}; font-size: 28px; margin: 20px 0; }}
      .details {{ background: white; padding: 30px; border-radius: 12px; margin: 20px auto; max-width: 500px; text-align: left; }}
      .btn {{ background: {color}; color: white; padding: 14px 28px; border-radius: 8px; text-decoration: none; display: inline-block; }}
    </style>
  </head>
  <body>
    <h1>{heading}</h1>
    {body}
  </body>
</html>
"""


def _text(value: Any) -> str:
    return escape("N/A" if value in (None, "") else str(value))


def _render(title: str, heading: str, body: str, color: str, background: str) -> str:
    return _PAGE.format(title=title, heading=heading, body=body, color=color, background=background)


def success_page(record: OrderRecord, frontend_url: str) -> str:
    link = escape(f"{frontend_url}/cart.html?payment=success&orderId={record.transaction_id}")
    body = (
        '<div class="details">'
        f"<p><strong>Order ID:</strong> {_text(record.transaction_id)}</p>"
        f"<p><strong>Transaction ID:</strong> {_text(record.gateway_transaction_id)}</p>"
        f"<p><strong>Amount Paid:</strong> &#8377;{_text(record.display_amount)}</p>"
        f"<p><strong>Customer:</strong> {_text(record.customer.get('name'))}</p>"
        "</div>"
        "<p>Your order has been confirmed! You will receive an email shortly.</p>"
        f'<a href="{link}" class="btn">View Order Details</a>'
    )
    return _render("Payment Successful", "Payment Successful!", body, "green", "#f0f8ff")


def pending_page(transaction_id: Optional[str], frontend_url: str) -> str:
    body = (
        f"<p><strong>Order ID:</strong> {_text(transaction_id)}</p>"
        "<p>Your payment is being processed. Please check back in a few minutes.</p>"
        f'<a href="{escape(frontend_url)}/cart.html" class="btn">Check Status</a>'
    )
    return _render("Payment Pending", "Payment Pending", body, "orange", "#fff9e6")


def failure_page(transaction_id: Optional[str], frontend_url: str) -> str:
    body = (
        f"<p><strong>Order ID:</strong> {_text(transaction_id)}</p>"
        "<p>Please try again or contact support.</p>"
        f'<a href="{escape(frontend_url)}/cart.html" class="btn">Return to Cart</a>'
    )
    return _render("Payment Failed", "Payment Failed", body, "red", "#fff5f5")


def error_page(message: str) -> str:
    return _render("Callback Error", escape(message), "", "red", "#fff5f5")


def outcome_page(
    verdict: OrderStatus,
    transaction_id: Optional[str],
    record: Optional[OrderRecord],
    frontend_url: str
) -> str:
    """Page for a reconciliation verdict; PAID needs the ledger record."""
    if verdict is OrderStatus.PAID and record is not None:
        return success_page(record, frontend_url)
    if verdict is OrderStatus.PENDING:
        return pending_page(transaction_id, frontend_url)
    return failure_page(transaction_id, frontend_url)
