"""Report templates with ``{{Placeholder}}`` tokens."""

from __future__ import annotations

import re
import uuid
from typing import TYPE_CHECKING, Any, Dict, List, Mapping

from clinicavoice import store as docstore
from clinicavoice import time_utils
from clinicavoice.errors import NotFound
from clinicavoice.schemas import TemplateCreate, TemplatePatch

if TYPE_CHECKING:  # pragma: no cover - import cycle guard
    from clinicavoice.services import Services

DEFAULT_TEMPLATE_NAME = "New Template"

PLACEHOLDER_RE = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")


def placeholders(content: str) -> List[str]:
    """Return placeholder names in order of first appearance."""

    seen: Dict[str, None] = {}
    for match in PLACEHOLDER_RE.finditer(content or ""):
        seen.setdefault(match.group(1), None)
    return list(seen)


def render(content: str, values: Mapping[str, Any]) -> Dict[str, Any]:
    """Fill placeholders from ``values``; unknown placeholders stay in place."""

    missing: Dict[str, None] = {}

    def substitute(match: "re.Match[str]") -> str:
        name = match.group(1)
        if name in values:
            return str(values[name])
        missing.setdefault(name, None)
        return match.group(0)

    rendered = PLACEHOLDER_RE.sub(substitute, content or "")
    return {"content": rendered, "placeholders": placeholders(content), "missing": list(missing)}


def list_templates(services: "Services", clinician_id: str) -> Dict[str, Any]:
    templates = services.store.query(docstore.TEMPLATES, owner_id=clinician_id)
    templates.sort(key=lambda t: t.get("createdAt") or "")
    return {"templates": templates}


def get_template(services: "Services", clinician_id: str, template_id: str) -> Dict[str, Any]:
    template = services.store.get(docstore.TEMPLATES, clinician_id, template_id)
    if template is None:
        raise NotFound("Template not found")
    return template


def create_template(services: "Services", clinician_id: str, data: TemplateCreate) -> Dict[str, Any]:
    now = time_utils.now_iso()
    template = {
        "id": str(uuid.uuid4()),
        "userId": clinician_id,
        "name": data.name or DEFAULT_TEMPLATE_NAME,
        "content": data.content or "",
        "createdAt": now,
        "updatedAt": now,
    }
    services.store.put(docstore.TEMPLATES, template)
    return template


def update_template(
    services: "Services", clinician_id: str, template_id: str, data: TemplatePatch
) -> Dict[str, Any]:
    changes = data.patch()
    changes.update({"updatedAt": time_utils.now_iso(), "updatedBy": clinician_id})
    updated = services.store.update(docstore.TEMPLATES, clinician_id, template_id, changes)
    if updated is None:
        raise NotFound("Template not found")
    return updated


def delete_template(services: "Services", clinician_id: str, template_id: str) -> None:
    if not services.store.delete(docstore.TEMPLATES, clinician_id, template_id):
        raise NotFound("Template not found")


def render_template(
    services: "Services", clinician_id: str, template_id: str, values: Mapping[str, Any]
) -> Dict[str, Any]:
    template = get_template(services, clinician_id, template_id)
    result = render(template.get("content") or "", values)
    result["templateId"] = template_id
    result["name"] = template.get("name")
    return result


__all__ = [
    "PLACEHOLDER_RE",
    "placeholders",
    "render",
    "list_templates",
    "get_template",
    "create_template",
    "update_template",
    "delete_template",
    "render_template",
]
