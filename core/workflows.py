"""
core/workflows.py -- Discovery of manually dispatchable workflows.

A workflow can be triggered from the client only when its definition lists a
workflow_dispatch trigger. The workflow list from GitHub does not say so,
so each definition file is read and parsed:

    workflows = list_dispatchable(get, listing, api_path, ref="main")

Each result is the GitHub workflow record plus an "inputs" mapping describing
the workflow_dispatch inputs (description, required, type, default, options).

YAML 1.1 reads a bare `on:` key as the boolean True, so both spellings are
looked up. A definition that cannot be parsed is kept if its text mentions
workflow_dispatch, with no inputs.
"""

from __future__ import annotations

import base64
import binascii
import logging
from collections.abc import Callable
from typing import Any, Optional
from urllib.parse import quote

import yaml

from core.actions import fetch_optional

logger = logging.getLogger("hubgate.workflows")

DISPATCH_TRIGGER = "workflow_dispatch"


def _triggers(doc: Any) -> Any:
    if not isinstance(doc, dict):
        return None
    return doc.get("on", doc.get(True))


def dispatch_trigger(doc: Any) -> Optional[dict]:
    """Return the workflow_dispatch section of a parsed workflow, or None.

    An empty dict means the trigger is present without inputs.
    """
    triggers = _triggers(doc)
    if triggers == DISPATCH_TRIGGER:
        return {}
    if isinstance(triggers, list):
        return {} if DISPATCH_TRIGGER in triggers else None
    if isinstance(triggers, dict) and DISPATCH_TRIGGER in triggers:
        section = triggers[DISPATCH_TRIGGER]
        return section if isinstance(section, dict) else {}
    return None


def parse_inputs(section: dict) -> dict[str, dict]:
    inputs: dict[str, dict] = {}
    raw = section.get("inputs")
    if not isinstance(raw, dict):
        return inputs
    for name, config in raw.items():
        if not isinstance(config, dict):
            continue
        inputs[str(name)] = {
            "description": config.get("description") or "",
            "required": config.get("required") is True,
            "type": config.get("type") or "string",
            "default": config.get("default"),
            "options": config.get("options"),
        }
    return inputs


def dispatch_inputs(text: str) -> Optional[dict[str, dict]]:
    """Inputs of a workflow definition, or None if it cannot be dispatched."""
    try:
        doc = yaml.safe_load(text)
    except yaml.YAMLError:
        logger.debug("Unparseable workflow definition; falling back to a text check")
        return {} if DISPATCH_TRIGGER in text else None
    section = dispatch_trigger(doc)
    if section is None:
        return None
    return parse_inputs(section)


def decode_content(file: Any) -> Optional[str]:
    """Text of a contents API file object (base64 encoded), or None."""
    if not isinstance(file, dict) or not isinstance(file.get("content"), str):
        return None
    try:
        return base64.b64decode(file["content"]).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None


def list_dispatchable(
    get: Callable[..., Any],
    listing: Optional[dict],
    api_path: str,
    ref: Optional[str] = None,
) -> dict:
    """Keep the workflows whose definition declares workflow_dispatch.

    A definition that cannot be read is skipped; a rejected credential is not.
    """
    dispatchable = []
    for workflow in (listing or {}).get("workflows") or []:
        path = workflow.get("path")
        if not path:
            continue
        file = fetch_optional(get, f"{api_path}/contents/{quote(path, safe='/')}", None, {"ref": ref})
        text = decode_content(file)
        if text is None:
            continue
        inputs = dispatch_inputs(text)
        if inputs is not None:
            dispatchable.append({**workflow, "inputs": inputs})
    return {"workflows": dispatchable}
