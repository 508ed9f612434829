# marketops/channels/drafter.py
"""
Content drafters.

A drafter turns a task (with campaign/product joined) into a structured
content document whose shape depends on the task type. The template drafter is
deterministic apart from ``metadata.generated_at``; the OpenAI drafter asks the
model for the same shape as JSON.
"""
from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, Optional, Protocol

from openai import AsyncOpenAI

from marketops.common.errors import DraftingError
from marketops.data.models import Organization, TaskType, to_iso, utcnow

logger = logging.getLogger("marketops.drafter")

_KNOWN_TYPES = {t.value for t in TaskType}


class ContentDrafter(Protocol):
    async def draft(self, task: Dict[str, Any], organization: Optional[Organization] = None) -> Dict[str, Any]: ...


def drafting_context(task: Dict[str, Any], organization: Optional[Organization] = None) -> Dict[str, Any]:
    campaign = task.get("campaign") or {}
    product = campaign.get("product") or {}
    return {
        "product": {
            "name": product.get("name"),
            "description": product.get("description"),
            "positioning": product.get("positioning"),
            "verified_claims": product.get("verified_claims"),
        },
        "campaign": {
            "name": campaign.get("name"),
            "goal": campaign.get("goal"),
            "channels": campaign.get("channels"),
        },
        "task": {
            "type": task.get("type"),
            "title": task.get("title"),
            "description": task.get("description"),
            "input_data": task.get("input_data") or {},
        },
        "sandbox_mode": bool(organization and organization.sandbox_mode),
    }


def _slug(title: str) -> str:
    return re.sub(r"\s+", "-", title.strip().lower())


class TemplateDrafter:
    """Structured templates per task type. No network calls."""

    model_name = "template"

    async def draft(self, task: Dict[str, Any], organization: Optional[Organization] = None) -> Dict[str, Any]:
        ctx = drafting_context(task, organization)
        title = task.get("title") or ""
        product = ctx["product"]["name"] or "our product"
        raw_type = task.get("type") or ""
        kind = TaskType(raw_type) if raw_type in _KNOWN_TYPES else None

        if kind in (TaskType.EMAIL_SINGLE, TaskType.EMAIL_SEQUENCE):
            doc: Dict[str, Any] = {
                "subject": title,
                "preview_text": f"Learn more about {product}",
                "body_html": f"<p>{task.get('description') or f'Email content for {product}'}</p>",
                "body_text": task.get("description") or f"Email content for {product}",
            }
            recipients = (task.get("input_data") or {}).get("recipients")
            if recipients:
                doc["recipients"] = recipients
        elif kind is TaskType.BLOG_POST:
            doc = {
                "title": title,
                "slug": _slug(title),
                "excerpt": f"A post about {product}",
                "body": f"# {title}\n\n{task.get('description') or f'Content for {product}.'}",
                "seo_title": title,
                "seo_description": f"Learn about {product}",
            }
        elif kind is TaskType.SOCIAL_POST:
            doc = {
                "text": f"Check out {product}! {title}",
                "hashtags": ["marketing", "automation"],
                "media_urls": [],
            }
        elif kind is TaskType.LANDING_PAGE:
            doc = {
                "title": title,
                "headline": f"Discover {product}",
                "subheadline": ctx["product"]["description"] or "",
                "sections": [
                    {"type": "hero", "content": "Hero section content"},
                    {"type": "features", "content": "Features section content"},
                    {"type": "cta", "content": "Call to action"},
                ],
            }
        elif kind is TaskType.AD_CAMPAIGN:
            doc = {
                "headline": title,
                "description": task.get("description") or f"Discover {product}",
                "call_to_action": "Learn more",
                "budget_cents": (task.get("input_data") or {}).get("budget_cents", 0),
            }
        else:
            doc = {"title": title, "content": f"Content for {raw_type}"}

        doc["metadata"] = {"generated_at": to_iso(utcnow()), "model": self.model_name, "context": ctx}
        return doc


_SYSTEM_PROMPT = (
    "You are a marketing copywriter. Reply with a single JSON object containing the "
    "fields requested for the task type. Use only the verified claims you are given."
)

_FIELDS = {
    TaskType.EMAIL_SINGLE.value: "subject, preview_text, body_html, body_text",
    TaskType.EMAIL_SEQUENCE.value: "subject, preview_text, body_html, body_text",
    TaskType.BLOG_POST.value: "title, slug, excerpt, body, seo_title, seo_description",
    TaskType.SOCIAL_POST.value: "text, hashtags, media_urls",
    TaskType.LANDING_PAGE.value: "title, headline, subheadline, sections",
    TaskType.AD_CAMPAIGN.value: "headline, description, call_to_action",
}


class OpenAIDrafter:
    def __init__(self, api_key: str, model: str = "gpt-4o-mini", client: Optional[AsyncOpenAI] = None):
        if client is None and not api_key:
            raise ValueError("Missing OPENAI_API_KEY for the OpenAI drafter.")
        self.client = client or AsyncOpenAI(api_key=api_key)
        self.model = model

    async def draft(self, task: Dict[str, Any], organization: Optional[Organization] = None) -> Dict[str, Any]:
        ctx = drafting_context(task, organization)
        fields = _FIELDS.get(task.get("type") or "", "title, content")
        prompt = f"Task type: {task.get('type')}\nReturn JSON with: {fields}\nContext:\n{json.dumps(ctx, default=str)}"

        logger.info("Drafting %s content for task %s with %s", task.get("type"), task.get("id"), self.model)
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": _SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                response_format={"type": "json_object"},
                temperature=0.7,
            )
            text = (response.choices[0].message.content or "").strip()
            doc = json.loads(text)
        except json.JSONDecodeError as e:
            raise DraftingError(f"Model returned non-JSON content: {e}") from e
        except Exception as e:
            raise DraftingError(f"OpenAI drafting failed: {e}") from e

        if not isinstance(doc, dict):
            raise DraftingError("Model returned a JSON value that is not an object")
        doc["metadata"] = {"generated_at": to_iso(utcnow()), "model": self.model, "context": ctx}
        return doc
