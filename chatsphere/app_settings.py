"""Admin-editable settings persisted in the ``app_settings`` table.

Three documents live there: the public webhook path, the API controls toggles
and the message template catalog. Stored values are JSON and are normalized on
every read.
"""
from __future__ import annotations

import json
import math
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from . import config

WEBHOOK_SETTINGS_KEY = "metaWebhookSettings"
API_CONTROLS_KEY = "apiControls"
TEMPLATE_CATALOG_KEY = "templateCatalog"

DEFAULT_WEBHOOK_PATH = "/webhook/meta"
DEFAULT_TEMPLATE_LANGUAGE = "en_US"
DEFAULT_API_CONTROLS = {"testWebhookEnabled": True}


class TemplateError(ValueError):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


# ── webhook path ──
def normalize_webhook_path(path: Any) -> str:
    """Leading slash, no doubled or trailing slashes, always under ``/webhook``."""
    if not isinstance(path, str) or not path.strip():
        return DEFAULT_WEBHOOK_PATH
    normalized = path.strip()
    if not normalized.startswith("/"):
        normalized = "/" + normalized
    normalized = re.sub(r"/{2,}", "/", normalized)
    if len(normalized) > 1:
        normalized = normalized.rstrip("/")
    if not normalized.startswith("/webhook"):
        normalized = "/webhook" + ("" if normalized == "/" else normalized)
    return normalized or DEFAULT_WEBHOOK_PATH


async def get_webhook_settings(db_manager) -> dict:
    stored = await db_manager.get_setting(WEBHOOK_SETTINGS_KEY)
    if not isinstance(stored, dict) or not isinstance(stored.get("path"), str):
        return {"path": DEFAULT_WEBHOOK_PATH, "updatedAt": None}
    return {"path": normalize_webhook_path(stored["path"]), "updatedAt": stored.get("updatedAt")}


async def set_webhook_path(db_manager, path: str) -> dict:
    settings = {"path": normalize_webhook_path(path), "updatedAt": datetime.now(timezone.utc).isoformat()}
    await db_manager.set_setting(WEBHOOK_SETTINGS_KEY, settings)
    return settings


# ── API controls ──
async def get_api_controls(db_manager) -> dict:
    stored = await db_manager.get_setting(API_CONTROLS_KEY)
    controls = dict(DEFAULT_API_CONTROLS)
    if isinstance(stored, dict):
        controls.update(stored)
    return controls


async def update_api_controls(db_manager, changes: dict) -> dict:
    controls = await get_api_controls(db_manager)
    if isinstance(changes.get("testWebhookEnabled"), bool):
        controls["testWebhookEnabled"] = changes["testWebhookEnabled"]
    await db_manager.set_setting(API_CONTROLS_KEY, controls)
    return controls


# ── template catalog ──
def parse_components(value: Any) -> Optional[List[dict]]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return None
    if not isinstance(value, list):
        return None
    return [c for c in value if isinstance(c, dict)]


def count_body_params(components: Optional[List[dict]]) -> int:
    for component in components or []:
        if component.get("type") == "body":
            params = component.get("parameters")
            return len(params) if isinstance(params, list) else 0
    return 0


def _trimmed(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    return value.strip() or None


def template_id(name: str, language: Optional[str] = None) -> str:
    return f"{name}::{(language or '').strip().lower() or 'default'}"


def normalize_template(item: Any) -> Optional[dict]:
    """Catalog entry with a stable ``id``; None when it has no name."""
    if not isinstance(item, dict):
        return None
    name = _trimmed(item.get("name"))
    if not name:
        return None
    language = _trimmed(item.get("language"))
    components = parse_components(item.get("components"))
    body_params = item.get("bodyParams")
    if isinstance(body_params, (int, float)) and not isinstance(body_params, bool) and math.isfinite(body_params) and body_params >= 0:
        body_params = int(body_params)
    else:
        body_params = count_body_params(components)
    return {
        "id": _trimmed(item.get("id")) or template_id(name, language),
        "name": name,
        "language": language,
        "description": _trimmed(item.get("description")),
        "category": _trimmed(item.get("category")),
        "components": components,
        "bodyParams": body_params,
    }


def env_template_catalog() -> List[dict]:
    items: List[dict] = []
    if config.META_TEMPLATE_CATALOG:
        try:
            parsed = json.loads(config.META_TEMPLATE_CATALOG)
        except ValueError:
            parsed = None
        if isinstance(parsed, list):
            items = [t for t in (normalize_template(i) for i in parsed) if t]
    if not items and config.META_TEMPLATE_NAME:
        components = parse_components(config.META_TEMPLATE_COMPONENTS)
        items.append(normalize_template({
            "name": config.META_TEMPLATE_NAME,
            "language": config.META_TEMPLATE_LANGUAGE or DEFAULT_TEMPLATE_LANGUAGE,
            "components": components,
        }))
    return items


class TemplateCatalog:
    """CRUD over the stored catalog; the whole list is rewritten on each change."""

    def __init__(self, db_manager):
        self.db_manager = db_manager

    async def items(self) -> List[dict]:
        stored = await self.db_manager.get_setting(TEMPLATE_CATALOG_KEY)
        if not isinstance(stored, list):
            return []
        return [t for t in (normalize_template(i) for i in stored) if t]

    async def available(self) -> List[dict]:
        return await self.items() or env_template_catalog()

    async def _save(self, items: List[dict]) -> None:
        await self.db_manager.set_setting(TEMPLATE_CATALOG_KEY, items)

    async def create(self, payload: Dict[str, Any]) -> dict:
        if not _trimmed(payload.get("name")):
            raise TemplateError("Template name is required.")
        item = normalize_template({k: payload.get(k) for k in ("name", "language", "description", "category", "components", "bodyParams")})
        items = await self.items()
        if any(t["id"] == item["id"] for t in items):
            raise TemplateError("Template already exists.")
        await self._save([*items, item])
        return item

    async def update(self, item_id: str, payload: Dict[str, Any]) -> dict:
        items = await self.items()
        index = next((i for i, t in enumerate(items) if t["id"] == item_id), None)
        if index is None:
            raise TemplateError("Template not found.", 404)

        merged = dict(items[index])
        if isinstance(payload.get("name"), str):
            if not payload["name"].strip():
                raise TemplateError("Template name cannot be empty.")
            merged["name"] = payload["name"]
        for key in ("language", "description", "category", "components", "bodyParams"):
            if key in payload:
                merged[key] = payload[key]
        # Renames keep the original id.
        item = normalize_template(merged)
        items[index] = item
        await self._save(items)
        return item

    async def delete(self, item_id: str) -> None:
        items = await self.items()
        remaining = [t for t in items if t["id"] != item_id]
        if len(remaining) == len(items):
            raise TemplateError("Template not found.", 404)
        await self._save(remaining)
