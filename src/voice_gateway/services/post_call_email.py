"""Post-call report emails for tenant staff.

Uses asyncio.to_thread to wrap the synchronous SendGrid client.
"""

import asyncio
import html
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping

import sendgrid
from sendgrid.helpers.mail import Email, HtmlContent, Mail, To

from voice_gateway.app.config import get_settings
from voice_gateway.domain.tenant import TenantContext
from voice_gateway.services.phone import mask_phone

logger = logging.getLogger(__name__)

SPAM_AGENT_STATE = "identify_spam_call"
TRANSCRIPT_PREVIEW_CHARS = 300


@dataclass
class EmailResult:
    sent: bool
    skipped: bool = False
    reason: str | None = None
    recipient: str | None = None
    subject: str | None = None


# ---------------------------------------------------------------------------
# Content
# ---------------------------------------------------------------------------


def customer_spoke(call: Mapping[str, Any]) -> bool:
    """True when any ``user`` turn has non-empty content."""
    turns = call.get("transcript_with_tool_calls") or call.get("transcript_object") or []
    return any(
        isinstance(turn, Mapping) and turn.get("role") == "user" and str(turn.get("content") or "").strip()
        for turn in turns
    )


def is_spam_call(call: Mapping[str, Any]) -> bool:
    collected = call.get("collected_dynamic_variables") or {}
    return collected.get("current_agent_state") == SPAM_AGENT_STATE


def format_cost(cost_hundredths: Any, threshold: float) -> tuple[str, bool]:
    """Cost arrives in hundredths of a currency unit; returns (``$x.xx``, is_high)."""
    try:
        amount = float(cost_hundredths or 0) / 100
    except (TypeError, ValueError):
        amount = 0.0
    return f"${amount:.2f}", amount > threshold


def format_duration(duration_ms: Any) -> str:
    if not duration_ms:
        return "Unknown"
    seconds = int(duration_ms) // 1000
    return f"{seconds // 60}m {seconds % 60}s"


def _format_timestamp(ms: Any) -> str:
    if not ms:
        return "Unknown"
    try:
        moment = datetime.fromtimestamp(int(ms) / 1000, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return "Unknown"
    return moment.strftime("%A, %B %d, %Y %I:%M %p UTC")


def _product_cost(call: Mapping[str, Any], needle: str) -> float:
    for product in (call.get("call_cost") or {}).get("product_costs") or []:
        if needle in str(product.get("product", "")):
            return float(product.get("cost") or 0) / 100
    return 0.0


def build_subject(call: Mapping[str, Any], analysis: Mapping[str, Any], business_name: str) -> str:
    caller = (call.get("retell_llm_dynamic_variables") or {}).get("customer_first_name") or "Unknown Customer"
    if is_spam_call(call):
        return f"🗑️ {business_name} - Spam Call Detected"
    successful = analysis.get("call_successful")
    if not successful or analysis.get("user_sentiment") == "Negative":
        issue = "Failed Call" if not successful else "Negative Sentiment"
        return f"🚨 {business_name} - {caller} - {issue}"
    return f"✅ {business_name} - Call Report - {caller}"


def _row(label: str, value: Any, color: str | None = None) -> str:
    style = f" style=\"color:{color}; font-weight:600;\"" if color else ""
    return (
        f"<tr><td style=\"font-weight:600; width:180px;\">{html.escape(label)}:</td>"
        f"<td{style}>{html.escape(str(value))}</td></tr>"
    )


def _turns_html(call: Mapping[str, Any]) -> str:
    parts = []
    for turn in call.get("transcript_with_tool_calls") or []:
        role = turn.get("role")
        if role == "agent":
            parts.append(f"<p><strong>Agent:</strong> {html.escape(str(turn.get('content') or ''))}</p>")
        elif role == "user":
            parts.append(f"<p><strong>Customer:</strong> {html.escape(str(turn.get('content') or ''))}</p>")
        elif role == "tool_call_invocation":
            args = html.escape(str(turn.get("arguments") or ""))
            parts.append(
                f"<p><strong>AI Action:</strong> {html.escape(str(turn.get('name') or ''))}"
                f"<br><code style=\"font-size:12px;\">{args}</code></p>"
            )
    return "".join(parts)


def build_email_html(
    call: Mapping[str, Any],
    analysis: Mapping[str, Any],
    business_name: str,
    cost_threshold: float,
) -> str:
    dyn = call.get("retell_llm_dynamic_variables") or {}
    caller_name = dyn.get("customer_full_name") or dyn.get("customer_first_name") or "Unknown Customer"
    spam = is_spam_call(call)
    is_issue = not spam and (not analysis.get("call_successful") or analysis.get("user_sentiment") == "Negative")

    total_cost, cost_high = format_cost((call.get("call_cost") or {}).get("combined_cost"), cost_threshold)
    latency = call.get("latency") or {}
    e2e = (latency.get("e2e") or {}).get("p50")
    llm = (latency.get("llm") or {}).get("p50")

    transcript = call.get("transcript")
    if isinstance(transcript, str) and transcript:
        preview = transcript[:TRANSCRIPT_PREVIEW_CHARS] + ("..." if len(transcript) > TRANSCRIPT_PREVIEW_CHARS else "")
    else:
        preview = "No transcript available"

    links = []
    if call.get("recording_url"):
        links.append(f"<a href=\"{html.escape(call['recording_url'])}\">Listen to recording</a>")
    if call.get("public_log_url"):
        links.append(f"<a href=\"{html.escape(call['public_log_url'])}\">View call log</a>")

    header_color = "#e74c3c" if is_issue else "#3498db"
    turns = _turns_html(call)

    return f"""
<!DOCTYPE html>
<html lang="en">
<head><meta charset="UTF-8"></head>
<body style="margin: 0; padding: 20px; font-family: Arial, sans-serif; background-color: #f5f5f5;">
    <table width="700" cellpadding="0" cellspacing="0" style="background: #fff; border-radius: 8px; margin: 0 auto;">
        <tr><td style="background:{header_color}; color:#fff; padding:20px; text-align:center;">
            <h1 style="margin:0; font-size:22px;">{html.escape(business_name)} Call Report</h1>
        </td></tr>
        <tr><td style="padding:20px;">
            <h2 style="font-size:18px;">Overview</h2>
            <table width="100%" cellpadding="6" cellspacing="0" style="font-size:14px; color:#374151;">
                {_row("Customer", caller_name)}
                {_row("Phone", call.get("from_number") or "Unknown")}
                {_row("Started", _format_timestamp(call.get("start_timestamp")))}
                {_row("Duration", format_duration(call.get("duration_ms")))}
                {_row("Status", call.get("call_status") or "Unknown")}
                {_row("Spam", "Yes" if spam else "No")}
            </table>
            <h2 style="font-size:18px;">Cost</h2>
            <table width="100%" cellpadding="6" cellspacing="0" style="font-size:14px; color:#374151;">
                {_row("Total", total_cost, "#e74c3c" if cost_high else "#27ae60")}
                {_row("Voice (TTS)", f"${_product_cost(call, 'tts'):.2f}")}
                {_row("LLM", f"${_product_cost(call, 'gpt'):.2f}")}
            </table>
            <h2 style="font-size:18px;">Latency</h2>
            <table width="100%" cellpadding="6" cellspacing="0" style="font-size:14px; color:#374151;">
                {_row("End-to-end p50", f"{round(e2e)}ms" if e2e else "Unknown")}
                {_row("LLM p50", f"{round(llm)}ms" if llm else "Unknown")}
            </table>
            <h2 style="font-size:18px;">Analysis</h2>
            <table width="100%" cellpadding="6" cellspacing="0" style="font-size:14px; color:#374151;">
                {_row("Successful", "Yes" if analysis.get("call_successful") else "No")}
                {_row("Sentiment", analysis.get("user_sentiment") or "Unknown")}
                {_row("Summary", analysis.get("call_summary") or "No summary available")}
            </table>
            <h2 style="font-size:18px;">Transcript</h2>
            <div style="background:#f8f9fa; padding:12px; font-size:13px;">{html.escape(preview)}</div>
            {"<p>" + " | ".join(links) + "</p>" if links else ""}
            {"<h2 style='font-size:18px;'>Conversation with AI actions</h2>" + turns if turns else ""}
            <p style="font-size:12px; color:#6b7280;">Call ID: {html.escape(str(call.get("call_id") or ""))}</p>
        </td></tr>
    </table>
</body>
</html>
"""


# ---------------------------------------------------------------------------
# Sending
# ---------------------------------------------------------------------------


def _send_mail(mail: Mail) -> bool:
    """Synchronous send via SendGrid. Returns True on success."""
    client = sendgrid.SendGridAPIClient(api_key=get_settings().sendgrid_api_key)
    response = client.send(mail)
    if response.status_code in (200, 201, 202):
        return True
    logger.error("SendGrid returned status %s: %s", response.status_code, response.body)
    return False


def resolve_recipient(tenant: TenantContext | None) -> str | None:
    """Tenant staff email first, then the configured default."""
    if tenant is not None and tenant.staff_email:
        return tenant.staff_email
    return get_settings().email_to or None


async def send_post_call_email(
    call: Mapping[str, Any],
    analysis: Mapping[str, Any],
    tenant: TenantContext | None = None,
    correlation_id: str | None = None,
) -> EmailResult:
    """Send the staff report for an analyzed call.

    Raises on transport failure; callers treat that as non-fatal.
    """
    if not customer_spoke(call):
        logger.info("Post-call email skipped for %s: customer never spoke", call.get("call_id"))
        return EmailResult(sent=False, skipped=True, reason="no_customer_speech")

    settings = get_settings()
    recipient = resolve_recipient(tenant)
    if not settings.sendgrid_api_key or not settings.email_from or not recipient:
        logger.warning("Post-call email not configured, skipping call %s", call.get("call_id"))
        return EmailResult(sent=False, skipped=True, reason="email_not_configured")

    dyn = call.get("retell_llm_dynamic_variables") or {}
    business_name = (
        (tenant.business_name if tenant else None)
        or dyn.get("business_name")
        or settings.default_business_name
    )
    subject = build_subject(call, analysis, business_name)
    mail = Mail(
        from_email=Email(settings.email_from, business_name),
        to_emails=To(recipient),
        subject=subject,
        html_content=HtmlContent(build_email_html(call, analysis, business_name, settings.email_cost_alert_threshold)),
    )

    sent = await asyncio.to_thread(_send_mail, mail)
    logger.info(
        "Post-call email %s: call=%s caller=%s subject=%r correlation_id=%s",
        "sent" if sent else "rejected", call.get("call_id"), mask_phone(call.get("from_number")),
        subject, correlation_id,
    )
    return EmailResult(sent=sent, recipient=recipient, subject=subject)
