"""Workflow definition storage and file loading."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

import yaml
from pydantic import ValidationError as PydanticValidationError

from .contracts import WorkflowDefinition, WorkflowStatus
from .errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


class DefinitionStore(Protocol):
    """Port the engine uses to fetch published definitions."""

    async def load_published(self, workflow_id: str) -> WorkflowDefinition:
        """Return the newest published version or raise :class:`NotFoundError`."""

    async def get(self, workflow_id: str, version: Optional[int] = None) -> WorkflowDefinition:
        """Return a specific version (newest when ``version`` is ``None``)."""


class InMemoryDefinitionStore(DefinitionStore):
    """Keeps every version of every definition in memory."""

    def __init__(self, definitions: Iterable[WorkflowDefinition] = ()) -> None:
        self._definitions: Dict[Tuple[str, int], WorkflowDefinition] = {
            (d.id, d.version): d for d in definitions
        }

    async def save(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        key = (definition.id, definition.version)
        existing = self._definitions.get(key)
        if (
            existing is not None
            and existing is not definition
            and existing.status != WorkflowStatus.DRAFT
        ):
            raise ValidationError(
                [f"workflow {definition.id} v{definition.version} is already {existing.status.value}"]
            )
        self._definitions[key] = definition
        return definition

    async def get(self, workflow_id: str, version: Optional[int] = None) -> WorkflowDefinition:
        versions = self.versions(workflow_id)
        if not versions:
            raise NotFoundError(f"Workflow {workflow_id} not found")
        if version is None:
            return versions[-1]
        for definition in versions:
            if definition.version == version:
                return definition
        raise NotFoundError(f"Workflow {workflow_id} v{version} not found")

    def versions(self, workflow_id: str) -> List[WorkflowDefinition]:
        return sorted(
            (d for (wf_id, _), d in self._definitions.items() if wf_id == workflow_id),
            key=lambda d: d.version,
        )

    async def load_published(self, workflow_id: str) -> WorkflowDefinition:
        published = [d for d in self.versions(workflow_id) if d.is_published]
        if not published:
            raise NotFoundError(f"No published version of workflow {workflow_id}")
        return published[-1]

    async def list_definitions(self) -> List[WorkflowDefinition]:
        return sorted(self._definitions.values(), key=lambda d: (d.id, d.version))


def parse_definition(data: Dict[str, Any]) -> WorkflowDefinition:
    """Build a draft definition from its dict form."""
    if not isinstance(data, dict):
        raise ValidationError(["workflow definition must be a mapping"])
    payload = {key: value for key, value in data.items() if key != "status"}
    try:
        return WorkflowDefinition.model_validate(payload)
    except PydanticValidationError as exc:
        problems = [
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in exc.errors()
        ]
        raise ValidationError(problems) from exc


def load_definition(path: str | Path) -> WorkflowDefinition:
    """Read a YAML or JSON workflow file into a draft definition."""
    path = Path(path)
    with open(path) as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ValidationError([f"{path}: not valid YAML/JSON: {exc}"]) from exc
    definition = parse_definition(data)
    logger.debug(f"Loaded workflow {definition.id} v{definition.version} from {path}")
    return definition
