"""Forward terminal job outcomes to a monitoring endpoint."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp

from .logger import get_logger


def report_payload(row: Dict[str, Any]) -> Dict[str, Any]:
    """Reduce a stored job row to the fields sent to monitoring."""
    return {
        "id": row.get("id"),
        "queue": row.get("queue"),
        "kind": row.get("kind"),
        "user_id": row.get("user_id"),
        "batch_id": row.get("batch_id"),
        "state": row.get("state"),
        "attempt": row.get("attempt"),
        "terminal_at": row.get("terminal_at"),
        "error": row.get("error"),
        "error_code": row.get("error_code"),
    }


class DeliveryReporter:
    """Send delivery reports to an async callable or an HTTP endpoint.

    With ``report_url`` the reports are POSTed as
    ``{"delivery_report": [...]}`` using bearer (``token``) or basic
    (``user``/``password``) authentication.
    """

    def __init__(
        self,
        *,
        report_url: Optional[str] = None,
        token: Optional[str] = None,
        user: Optional[str] = None,
        password: Optional[str] = None,
        callback: Optional[Callable[[Dict[str, Any]], Awaitable[None]]] = None,
        timeout: float = 30.0,
        log_delivery_activity: bool = False,
    ):
        self.report_url = report_url
        self.token = token
        self.user = user
        self.password = password
        self.callback = callback
        self.timeout = timeout
        self.log_delivery_activity = log_delivery_activity
        self.logger = get_logger("NotifyQueue.reporting")

    @property
    def configured(self) -> bool:
        return bool(self.report_url) or self.callback is not None

    async def send(self, payloads: List[Dict[str, Any]]) -> None:
        """Deliver ``payloads``; raises on transport errors so callers can retry."""
        if not payloads:
            return
        if self.callback is not None:
            for payload in payloads:
                await self.callback(payload)
            return
        if not self.report_url:
            raise RuntimeError("Report URL is not configured")
        headers: Dict[str, str] = {}
        auth = None
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        elif self.user:
            auth = aiohttp.BasicAuth(self.user, self.password or "")
        log = self.logger.info if self.log_delivery_activity else self.logger.debug
        log("Posting %d delivery report(s) to %s", len(payloads), self.report_url)
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
            async with session.post(
                self.report_url,
                json={"delivery_report": payloads},
                auth=auth,
                headers=headers or None,
            ) as resp:
                resp.raise_for_status()
