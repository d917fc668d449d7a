from __future__ import annotations

import html
from typing import Dict, List, Optional
from uuid import uuid4

import httpx

from caseflow.core.config import settings
from caseflow.core.logger import logger
from caseflow.utils.helpers import truncate_text, utcnow

RESEND_URL = "https://api.resend.com/emails"


class NotificationService:
    """
    Operator email with a provider toggle (dev logs only, resend sends).

    Every send is best-effort from the caller's point of view: callers catch
    and log, a notification never decides the outcome of a state change.
    """

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.provider = (settings.EMAIL_PROVIDER or "dev").strip().lower()
        self.transport = transport

    async def send_email(self, to: List[str], subject: str, html_body: str) -> Dict[str, object]:
        recipients = [addr.strip() for addr in to if addr and addr.strip()]
        if not recipients:
            logger.warning("Email '%s' skipped: no recipients configured", subject)
            return {"provider": self.provider, "sent": False}

        provider = self.provider
        if provider == "dev":
            logger.info("[DEV EMAIL] to=%s subject=%s", ",".join(recipients), subject)
            return {"provider": "dev", "sent": True}
        if provider == "resend":
            api_key = (settings.RESEND_API_KEY or "").strip()
            sender = (settings.EMAIL_FROM or "").strip()
            if not api_key or not sender:
                raise ValueError("Resend email config missing (RESEND_API_KEY/EMAIL_FROM)")
            payload = {
                "from": sender,
                "to": recipients,
                "subject": subject,
                "html": html_body,
            }
            headers = {
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            }
            async with httpx.AsyncClient(timeout=20.0, transport=self.transport) as client:
                resp = await client.post(RESEND_URL, json=payload, headers=headers)
                if resp.status_code >= 400:
                    raise ValueError(f"Resend email failed: {resp.status_code} {resp.text[:200]}")
            return {"provider": "resend", "sent": True}
        raise ValueError(f"Unsupported EMAIL_PROVIDER: {provider}")

    async def send_failure_notification(
        self,
        *,
        case_id: str,
        case_name: str,
        job_id: Optional[str],
        task: str,
        error: str,
        stage: str,
    ) -> Dict[str, object]:
        subject = f"[Caseflow] {task} failed for case {case_name}"
        rows = {
            "Case": f"{case_name} ({case_id})",
            "Job": job_id or "-",
            "Task": task,
            "Stage": stage,
            "Failed at": utcnow().isoformat() + "Z",
            "Error": truncate_text(error or "Unknown error", 2000),
        }
        return await self.send_email(settings.ops_alert_emails_list, subject, _render_table(subject, rows))

    async def send_support_ticket(
        self,
        *,
        case_id: str,
        case_name: str,
        user_email: Optional[str],
        organization_name: Optional[str],
        archive_url: Optional[str],
        error_details: str,
        stage: str,
        ticket_type: str = "auto",
    ) -> Dict[str, object]:
        ticket_id = f"TKT-{utcnow():%Y%m%d}-{uuid4().hex[:6].upper()}"
        subject = f"[{ticket_id}] Support ticket ({ticket_type}): {case_name}"
        rows = {
            "Ticket": ticket_id,
            "Type": ticket_type,
            "Case": f"{case_name} ({case_id})",
            "User": user_email or "-",
            "Organization": organization_name or "-",
            "Stage": stage,
            "Input archive": archive_url or "-",
            "Error details": truncate_text(error_details or "Unknown error", 4000),
        }
        result = await self.send_email([settings.SUPPORT_EMAIL], subject, _render_table(subject, rows))
        result["ticket_id"] = ticket_id
        return result


def _render_table(title: str, rows: Dict[str, str]) -> str:
    body = "".join(
        f"<tr><td><strong>{html.escape(label)}</strong></td><td>{html.escape(str(value))}</td></tr>"
        for label, value in rows.items()
    )
    return f"<h2>{html.escape(title)}</h2><table>{body}</table>"


notification_service = NotificationService()
