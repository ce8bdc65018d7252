"""Helpers the CLI uses to build engines and read definition files."""

from __future__ import annotations

import importlib
import json
from pathlib import Path
from typing import Any

import yaml

from ..capabilities import Capabilities, HttpxWebhookClient, in_memory_capabilities
from ..config import PracticeflowConfig
from ..contracts import WorkflowDefinition
from ..engine import WorkflowEngine
from ..persistence import get_repository


def load_definition_file(path: Path) -> WorkflowDefinition:
    """Parse a workflow definition from a YAML or JSON file."""
    text = path.read_text()
    if path.suffix.lower() == ".json":
        data = json.loads(text)
    else:
        data = yaml.safe_load(text)
    return WorkflowDefinition.model_validate(data)


def parse_record(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("record must be a JSON object")
    return data


def load_capabilities(config: PracticeflowConfig) -> Capabilities:
    """Build the collaborator bundle named by ``capabilities.factory``.

    The factory is a ``module:callable`` path; without one the in-memory
    collaborators are used and webhooks go out over httpx.
    """
    factory_path = config.capabilities.factory
    if not factory_path:
        return in_memory_capabilities(
            webhooks=HttpxWebhookClient(
                timeout=config.capabilities.webhook_timeout_seconds
            )
        )
    module_name, _, attr = factory_path.partition(":")
    if not attr:
        raise ValueError(f"Capabilities factory must look like 'module:callable', got {factory_path!r}")
    factory = getattr(importlib.import_module(module_name), attr)
    capabilities = factory()
    if not isinstance(capabilities, Capabilities):
        raise TypeError(f"{factory_path} did not return a Capabilities bundle")
    return capabilities


def build_engine(config: PracticeflowConfig) -> WorkflowEngine:
    return WorkflowEngine(
        repository=get_repository(config=config),
        capabilities=load_capabilities(config),
        max_steps=config.engine.max_steps_per_run,
    )
