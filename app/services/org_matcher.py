from __future__ import annotations

from collections.abc import Iterable, Sequence

from app.core.monitor_config import TemplateValidationConfig
from app.services.monitor_models import MeetingRecord, OrganizationRule

FALLBACK_ORGANIZATION = "Unknown"


def classify_meeting(
    meeting: MeetingRecord,
    rules: Sequence[OrganizationRule],
    default_organization: str,
) -> str:
    """
    Returns the name of the first rule matching the meeting, or the default
    organization when nothing matches. Never raises.
    """
    fallback = (default_organization or "").strip() or FALLBACK_ORGANIZATION
    title = _normalize(meeting.title)
    notes = _normalize(meeting.notes)
    attendees = {_normalize(email) for email in meeting.attendees if _normalize(email)}
    companies = {_normalize(company) for company in meeting.companies if _normalize(company)}

    for rule in rules:
        if not (rule.name or "").strip():
            continue
        if _matches_title_keywords(title, rule.title_keywords):
            return rule.name
        if _matches_email_domains(attendees, rule.email_domains):
            return rule.name
        if _matches_email_addresses(attendees, rule.email_addresses):
            return rule.name
        if _matches_company_names(title, notes, companies, rule.company_names):
            return rule.name
    return fallback


def matches_templates(meeting: MeetingRecord, validation: TemplateValidationConfig) -> bool:
    if not validation.enabled:
        return True

    required_ids = {value.strip() for value in validation.required_template_ids if value.strip()}
    required_names = {_normalize(value) for value in validation.template_names if _normalize(value)}
    if not required_ids and not required_names:
        return True

    meeting_ids = {value.strip() for value in meeting.template_ids}
    meeting_names = {_normalize(value) for value in meeting.template_names}
    if validation.mode == "all":
        return required_ids <= meeting_ids and required_names <= meeting_names
    return bool(required_ids & meeting_ids) or bool(required_names & meeting_names)


def _matches_title_keywords(title: str, keywords: Iterable[str]) -> bool:
    if not title:
        return False
    for keyword in keywords:
        normalized_keyword = _normalize(keyword)
        if normalized_keyword and normalized_keyword in title:
            return True
    return False


def _matches_email_domains(attendees: set[str], domains: Iterable[str]) -> bool:
    normalized_domains = {_normalize(domain).lstrip("@") for domain in domains}
    normalized_domains.discard("")
    if not normalized_domains:
        return False
    for email in attendees:
        _, separator, domain = email.rpartition("@")
        if not separator or not domain:
            continue
        if domain in normalized_domains:
            return True
        if any(domain.endswith(f".{candidate}") for candidate in normalized_domains):
            return True
    return False


def _matches_email_addresses(attendees: set[str], addresses: Iterable[str]) -> bool:
    normalized_addresses = {_normalize(address) for address in addresses}
    normalized_addresses.discard("")
    return bool(attendees & normalized_addresses)


def _matches_company_names(
    title: str,
    notes: str,
    companies: set[str],
    company_names: Iterable[str],
) -> bool:
    for company_name in company_names:
        normalized_name = _normalize(company_name)
        if not normalized_name:
            continue
        if normalized_name in companies:
            return True
        if normalized_name in title or normalized_name in notes:
            return True
    return False


def _normalize(value: str | None) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip().casefold()
