"""Helpers for generating ticket summaries from the full ticket context."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from dispatchdesk.core.config import Settings, get_settings
from dispatchdesk.schemas import APPOINTMENT_TYPE_LABELS
from dispatchdesk.services.ollama import request_summary


@dataclass
class MerchandiseContext:
    serial_no: str | None = None
    model_name: str | None = None
    brand: str | None = None
    capacity: str | None = None


@dataclass
class SummaryContext:
    work_type: str | None = None
    work_type_code: str | None = None
    status: str | None = None
    status_code: str | None = None
    details: str | None = None
    additional: str | None = None
    company_name: str | None = None
    company_tax_id: str | None = None
    site: dict[str, Any] | None = None
    contact: dict[str, Any] | None = None
    appointment: dict[str, Any] | None = None
    employees: list[str] = field(default_factory=list)
    key_employee: str | None = None
    confirmed_employees: list[str] = field(default_factory=list)
    merchandise: list[MerchandiseContext] = field(default_factory=list)
    work_giver: str | None = None
    assigner_name: str | None = None


def _normalize(value: Any | None) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _labelled(value: str | None, code: str | None) -> str:
    value, code = _normalize(value), _normalize(code)
    if value and code:
        return f"{value} ({code})"
    return value


def build_summary_text(context: SummaryContext) -> str:
    """Render every known piece of ticket context as labelled sections."""

    sections: list[str] = []

    work_type = _labelled(context.work_type, context.work_type_code)
    if work_type:
        sections.append(f"[Work type] {work_type}")
    status = _labelled(context.status, context.status_code)
    if status:
        sections.append(f"[Status] {status}")

    if _normalize(context.company_name):
        company = _normalize(context.company_name)
        if _normalize(context.company_tax_id):
            company += f" (Tax ID: {_normalize(context.company_tax_id)})"
        sections.append(f"[Company] {company}")

    site = context.site or {}
    site_parts: list[str] = []
    if _normalize(site.get("name")):
        site_parts.append(f"Name: {_normalize(site.get('name'))}")
    if _normalize(site.get("address_detail")):
        site_parts.append(f"Address: {_normalize(site.get('address_detail'))}")
    area = " ".join(
        _normalize(site.get(key))
        for key in ("subdistrict_name", "district_name", "province_name", "postal_code")
        if _normalize(site.get(key))
    )
    if area:
        site_parts.append(f"Area: {area}")
    if _normalize(site.get("map_url")):
        site_parts.append(f"Map: {_normalize(site.get('map_url'))}")
    if site_parts:
        sections.append(f"[Site] {' | '.join(site_parts)}")

    contact = context.contact or {}
    contact_parts: list[str] = []
    if _normalize(contact.get("person_name")):
        name = _normalize(contact.get("person_name"))
        if _normalize(contact.get("nickname")):
            name += f" ({_normalize(contact.get('nickname'))})"
        contact_parts.append(name)
    for key, label in (("phone", "Tel"), ("email", "Email")):
        values = [item for item in (contact.get(key) or []) if _normalize(item)]
        if values:
            contact_parts.append(f"{label}: {', '.join(values)}")
    if _normalize(contact.get("line_id")):
        contact_parts.append(f"LINE: {_normalize(contact.get('line_id'))}")
    if _normalize(contact.get("note")):
        contact_parts.append(f"Note: {_normalize(contact.get('note'))}")
    if contact_parts:
        sections.append(f"[Contact] {' | '.join(contact_parts)}")

    appointment = context.appointment or {}
    appointment_parts: list[str] = []
    if _normalize(appointment.get("appointment_date")):
        appointment_parts.append(f"Date: {_normalize(appointment.get('appointment_date'))}")
    start = _normalize(appointment.get("appointment_time_start"))
    end = _normalize(appointment.get("appointment_time_end"))
    if start or end:
        appointment_parts.append(f"Time: {start or '?'} - {end or '?'}")
    appointment_type = _normalize(appointment.get("appointment_type"))
    if appointment_type:
        appointment_parts.append(
            f"Type: {APPOINTMENT_TYPE_LABELS.get(appointment_type, appointment_type)}"
        )
    if appointment.get("is_approved") is not None and appointment_parts:
        approved = "approved" if appointment.get("is_approved") else "not approved"
        appointment_parts.append(f"Status: {approved}")
    if appointment_parts:
        sections.append(f"[Appointment] {' | '.join(appointment_parts)}")

    if _normalize(context.key_employee):
        sections.append(f"[Key technician] {_normalize(context.key_employee)}")
    others = [
        name for name in context.employees if _normalize(name) and name != context.key_employee
    ]
    if others:
        sections.append(f"[Technicians] {', '.join(others)}")
    if context.confirmed_employees:
        sections.append(f"[Confirmed technicians] {', '.join(context.confirmed_employees)}")

    merchandise_lines: list[str] = []
    for index, item in enumerate(context.merchandise, start=1):
        parts = [
            part
            for part in (_normalize(item.brand), _normalize(item.model_name), _normalize(item.capacity))
            if part
        ]
        if _normalize(item.serial_no):
            parts.append(f"S/N: {_normalize(item.serial_no)}")
        if parts:
            merchandise_lines.append(f"{index}. {' '.join(parts)}")
    if merchandise_lines:
        sections.append("[Equipment]\n" + "\n".join(merchandise_lines))

    if _normalize(context.work_giver):
        sections.append(f"[Work giver] {_normalize(context.work_giver)}")
    if _normalize(context.assigner_name):
        sections.append(f"[Assigner] {_normalize(context.assigner_name)}")
    if _normalize(context.details):
        sections.append(f"[Details] {_normalize(context.details)}")
    if _normalize(context.additional):
        sections.append(f"[Additional] {_normalize(context.additional)}")

    return "\n".join(sections)


def _truncate(text: str, max_length: int) -> str:
    return text[:max_length].strip() + "..."


async def summarize_ticket_context(
    context: SummaryContext,
    *,
    settings: Settings | None = None,
) -> dict[str, Any]:
    """Summarise the ticket, falling back to truncation when Ollama is unavailable."""

    settings = settings or get_settings()
    text = build_summary_text(context)
    max_length = settings.summary_max_length

    if not text:
        return {"summary": None, "provider": None, "model": None, "error": None, "used_fallback": False}
    if len(text) <= max_length:
        return {"summary": text, "provider": "verbatim", "model": None, "error": None, "used_fallback": False}

    result = await request_summary(text, settings=settings)
    summary_text = _normalize(result.get("summary"))
    if summary_text:
        return {
            "summary": summary_text,
            "provider": _normalize(result.get("provider")) or "ollama",
            "model": result.get("model"),
            "error": None,
            "used_fallback": False,
        }
    return {
        "summary": _truncate(text, max_length),
        "provider": "fallback",
        "model": result.get("model"),
        "error": _normalize(result.get("error")) or None,
        "used_fallback": True,
    }
