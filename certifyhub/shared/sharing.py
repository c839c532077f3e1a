from __future__ import annotations

from datetime import datetime
from urllib.parse import quote

SITE_NAME = "CertifyHub"
DEFAULT_TITLE = "Digital Certificate - CertifyHub"
DEFAULT_DESCRIPTION = (
    "View this verified digital certificate and confirm its authenticity on CertifyHub."
)


def _enc(value: str) -> str:
    # encodeURIComponent semantics
    return quote(value or "", safe="-_.!~*'()")


def sharing_urls(url: str | None, title: str) -> dict[str, str]:
    if not url:
        return {}
    u = _enc(url)
    t = _enc(title)
    return {
        "facebook": f"https://www.facebook.com/sharer/sharer.php?u={u}&quote={t}",
        "twitter": f"https://twitter.com/intent/tweet?url={u}&text={t}",
        "linkedin": f"https://www.linkedin.com/sharing/share-offsite/?url={u}",
        "reddit": f"https://reddit.com/submit?url={u}&title={t}",
        "whatsapp": f"https://wa.me/?text={t}%20{u}",
        "telegram": f"https://t.me/share/url?url={u}&text={t}",
    }


def open_graph_title(
    recipient_name: str | None = None,
    organization_name: str | None = None,
    template_name: str | None = None,
) -> str:
    if recipient_name and organization_name:
        return f"{recipient_name} - Digital Certificate from {organization_name}"
    if recipient_name and template_name:
        return f"{recipient_name} - {template_name} Certificate"
    return DEFAULT_TITLE


def open_graph_description(
    recipient_name: str | None = None,
    organization_name: str | None = None,
    template_name: str | None = None,
    issued_at: datetime | None = None,
) -> str:
    if recipient_name and organization_name and issued_at:
        date_str = f"{issued_at:%B} {issued_at.day}, {issued_at.year}"
        using = f" using {template_name} template" if template_name else ""
        return (
            f"Congratulations to {recipient_name}! This digital certificate from "
            f"{organization_name} was issued on {date_str}{using}. "
            "Click to view the full certificate and verify its authenticity."
        )
    return DEFAULT_DESCRIPTION


def open_graph(
    url: str | None,
    recipient_name: str | None = None,
    organization_name: str | None = None,
    template_name: str | None = None,
    issued_at: datetime | None = None,
) -> dict:
    """Title, description and share links for a certificate page."""
    title = open_graph_title(recipient_name, organization_name, template_name)
    return {
        "title": title,
        "description": open_graph_description(
            recipient_name, organization_name, template_name, issued_at
        ),
        "url": url,
        "site_name": SITE_NAME,
        "share": sharing_urls(url, title),
    }
