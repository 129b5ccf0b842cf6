"""
Transactional email.

Everything here is best effort: a send either works or is written to the
`email_log` table as failed. Nothing raises back into the business flow that
asked for the email, and nothing is retried.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from html import escape
from typing import List, Optional
import logging

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from .helpers import format_cents, new_id, now_ts
from .infra.timings import timeit
from .model.db import EmailLog

logger = logging.getLogger(__name__)


@dataclass
class ReceiptLine:
    product_name: str
    category: str
    quantity: int
    unit_price_cents: int

    @property
    def total_cents(self) -> int:
        return self.unit_price_cents * self.quantity


@dataclass
class OrderReceipt:
    order_id: str
    customer_email: str
    customer_name: Optional[str]
    customer_phone: Optional[str]
    payment_method: str
    total_cents: int
    donation_cents: int
    lines: List[ReceiptLine] = field(default_factory=list)
    raffle_entry_numbers: List[int] = field(default_factory=list)


def _items_table(receipt: OrderReceipt) -> str:
    rows = "".join(
        f"<tr><td>{escape(ln.product_name)}</td>"
        f"<td>{ln.quantity}</td>"
        f"<td>{format_cents(ln.total_cents)}</td></tr>"
        for ln in receipt.lines
    )
    if receipt.donation_cents > 0:
        rows += (
            "<tr><td>Additional donation</td><td></td>"
            f"<td>{format_cents(receipt.donation_cents)}</td></tr>"
        )
    rows += (
        "<tr><td><strong>Total</strong></td><td></td>"
        f"<td><strong>{format_cents(receipt.total_cents)}</strong></td></tr>"
    )
    return f"<table>{rows}</table>"


def _raffle_line(receipt: OrderReceipt) -> str:
    if not receipt.raffle_entry_numbers:
        return ""
    nums = ", ".join(str(n) for n in receipt.raffle_entry_numbers)
    return f"<p>Your raffle entry numbers: {nums}</p>"


class Mailer:
    def __init__(
        self, *,
        http: httpx.AsyncClient,
        sessions: Optional[async_sessionmaker],
        api_key: str,
        api_url: str,
        sender: str,
        admin_email: str,
        base_url: str = "",
    ) -> None:
        self.http = http
        self.sessions = sessions
        self.api_key = api_key
        self.api_url = api_url
        self.sender = sender
        self.admin_email = admin_email
        self.base_url = base_url.rstrip("/")

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def _audit(self, *, order_id, recipient, email_type, subject,
                     status, provider_id=None, error=None) -> None:
        if self.sessions is None:
            return
        try:
            async with self.sessions() as db:
                async with db.begin():
                    db.add(EmailLog(
                        id=new_id(),
                        order_id=order_id,
                        recipient=recipient,
                        email_type=email_type,
                        subject=subject,
                        provider_id=provider_id,
                        status=status,
                        error=error,
                        created_at=now_ts(),
                    ))
        except SQLAlchemyError:
            logger.exception("could not write email_log for %s", recipient)

    async def send(self, *, to: str, subject: str, html: str,
                   email_type: str, order_id: Optional[str] = None) -> bool:
        if not self.enabled:
            logger.info("email skipped (no API key): %s -> %s",
                        email_type, to)
            return False

        error = None
        provider_id = None
        try:
            async with timeit("email.send"):
                r = await self.http.post(
                    self.api_url,
                    json={
                        "from": self.sender,
                        "to": [to],
                        "subject": subject,
                        "html": html,
                    },
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
            if r.status_code >= 400:
                error = f"HTTP {r.status_code}: {r.text[:500]}"
            else:
                body = r.json()
                if isinstance(body, dict):
                    provider_id = body.get("id")
        except (httpx.HTTPError, ValueError) as e:
            error = f"{type(e).__name__}: {e}"

        if error:
            logger.warning("email %s to %s failed: %s", email_type, to, error)
            await self._audit(order_id=order_id, recipient=to,
                              email_type=email_type, subject=subject,
                              status="failed", error=error)
            return False

        logger.info("email %s sent to %s", email_type, to)
        await self._audit(order_id=order_id, recipient=to,
                          email_type=email_type, subject=subject,
                          status="sent", provider_id=provider_id)
        return True

    # ----------------------------
    # Order emails
    # ----------------------------
    async def send_purchase_receipt(self, receipt: OrderReceipt) -> bool:
        is_check = receipt.payment_method == "check"
        subject = (
            "Gala - Order Received (Payment Pending)" if is_check
            else "Gala - Order Confirmation"
        )
        greeting = escape(receipt.customer_name or "friend")
        pending = (
            "<p>Please mail your check; we will confirm once it arrives.</p>"
            if is_check else ""
        )
        html = (
            f"<p>Hi {greeting},</p>"
            f"<p>Thank you for your order <code>{receipt.order_id}</code>."
            f"</p>{pending}{_items_table(receipt)}{_raffle_line(receipt)}"
        )
        return await self.send(
            to=receipt.customer_email, subject=subject, html=html,
            email_type="purchase_receipt", order_id=receipt.order_id,
        )

    async def send_payment_received(self, receipt: OrderReceipt) -> bool:
        greeting = escape(receipt.customer_name or "friend")
        html = (
            f"<p>Hi {greeting},</p>"
            f"<p>We received your check payment of "
            f"{format_cents(receipt.total_cents)} for order "
            f"<code>{receipt.order_id}</code>. See you at the gala!</p>"
            f"{_items_table(receipt)}{_raffle_line(receipt)}"
        )
        return await self.send(
            to=receipt.customer_email, subject="Gala - Payment Confirmed",
            html=html, email_type="payment_received",
            order_id=receipt.order_id,
        )

    async def send_admin_notification(self, receipt: OrderReceipt) -> bool:
        who = receipt.customer_name or receipt.customer_email
        subject = (
            f"New Gala Order: {format_cents(receipt.total_cents)} from {who}"
        )
        payment = (
            "Check (pending)" if receipt.payment_method == "check"
            else "Credit Card"
        )
        html = (
            "<h2>New Gala Order</h2>"
            f"<p>Customer: {escape(receipt.customer_name or '(not provided)')}"
            f"<br>Email: {escape(receipt.customer_email)}"
            f"<br>Phone: {escape(receipt.customer_phone or '(not provided)')}"
            f"<br>Payment: {payment}</p>"
            f"{_items_table(receipt)}"
            f'<p><a href="{self.base_url}/admin/orders">View in admin</a></p>'
        )
        return await self.send(
            to=self.admin_email, subject=subject, html=html,
            email_type="admin_notification", order_id=receipt.order_id,
        )

    async def notify_order_placed(self, receipt: OrderReceipt) -> None:
        await self.send_purchase_receipt(receipt)
        await self.send_admin_notification(receipt)

    async def notify_fulfilled(
        self, receipt: OrderReceipt, previous_status: str
    ) -> None:
        # check orders got their receipt at checkout
        if previous_status == "pending_check":
            await self.send_payment_received(receipt)
            return
        await self.notify_order_placed(receipt)

    async def send_password_reset(self, to: str, token: str) -> bool:
        url = f"{self.base_url}/admin/reset-password?token={token}"
        html = (
            "<h2>Password Reset Request</h2>"
            f'<p><a href="{url}">{url}</a></p>'
            "<p>This link expires in 1 hour. If you didn't request it, "
            "ignore this email.</p>"
        )
        return await self.send(
            to=to, subject="Gala Admin - Password Reset", html=html,
            email_type="password_reset",
        )
