"""
Storage management tools exposed to the tool-dispatch layer.

Each tool maps one named action onto the change tracker and returns a
ToolExecutionResult holding JSON text, so tracker errors reach the caller as
structured failures instead of exceptions.
"""

from __future__ import annotations

import dataclasses
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, create_model

from ..core.errors import ChangeTrackerError, InvalidArgumentError
from ..core.models import ChangeKind, ChangeRecord, ConflictResolution, DiffFormat, ResolutionStrategy, RollbackOptions
from ..version.change_tracker import ChangeTracker


logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 10

# JSON schema types used by the tool parameter blocks
_SCHEMA_TYPES = {"string": str, "number": int, "boolean": bool}


@dataclass
class ToolExecutionResult:
    """Detailed result of tool execution."""
    success: bool
    content: str = ""
    error: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    document_modified: bool = False

    def to_response(self) -> Dict[str, Any]:
        """Render as a text response envelope."""
        text = self.content if self.success else (self.error or "Unknown error")
        response: Dict[str, Any] = {"content": [{"type": "text", "text": text}]}
        if not self.success:
            response["isError"] = True
        return response


def _json_result(data: Dict[str, Any], document_modified: bool = False) -> ToolExecutionResult:
    return ToolExecutionResult(
        success=True,
        content=json.dumps(data, indent=2),
        data=data,
        document_modified=document_modified,
    )


def _parse_date(value: Optional[str], name: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise InvalidArgumentError(f"{name} must be an ISO-8601 date, got {value!r}") from None


def _build_params_model(name: str, parameters: Dict[str, Any], required: List[str]) -> Type[BaseModel]:
    fields: Dict[str, Any] = {}
    for key, schema in parameters.items():
        annotation = Literal[tuple(schema["enum"])] if "enum" in schema else _SCHEMA_TYPES[schema["type"]]
        bounds = {
            constraint: schema[keyword]
            for keyword, constraint in (("minimum", "ge"), ("maximum", "le"))
            if keyword in schema
        }
        if key in required:
            fields[key] = (annotation, Field(..., **bounds))
        else:
            fields[key] = (Optional[annotation], Field(None, **bounds))

    return create_model(f"{name}Params", __config__=ConfigDict(strict=True, extra="ignore"), **fields)


def _history_entry(change: ChangeRecord) -> Dict[str, Any]:
    entry = change.summary_dict()
    entry["changes"] = [
        {
            "type": c.type.value,
            "section": c.section,
            "lineStart": c.line_start,
            "lineEnd": c.line_end,
            "summary": c.summary,
        }
        for c in change.changes
    ]
    entry["metadata"] = {
        "sizeBefore": change.metadata.size_before,
        "sizeAfter": change.metadata.size_after,
        "linesBefore": change.metadata.lines_before,
        "linesAfter": change.metadata.lines_after,
    }
    return entry


class StorageTool(ABC):
    """Base class for all storage tools."""

    name: str
    description: str
    parameters: Dict[str, Any]
    required: List[str] = []

    @abstractmethod
    async def execute(self, parameters: Dict[str, Any], tracker: ChangeTracker) -> ToolExecutionResult:
        """Execute the tool with given parameters."""

    @classmethod
    def params_model(cls) -> Type[BaseModel]:
        """Pydantic model built from the declared parameter schema."""
        model = cls.__dict__.get("_params_model")
        if model is None:
            model = _build_params_model(cls.__name__, cls.parameters, cls.required)
            cls._params_model = model
        return model

    def validate(self, parameters: Dict[str, Any]) -> Dict[str, Any]:
        """Check parameters against the schema and return the accepted values."""
        missing = [name for name in self.required if parameters.get(name) in (None, "")]
        if missing:
            raise InvalidArgumentError(f"{', '.join(self.required)} required for {self.name} action")

        try:
            accepted = self.params_model().model_validate(parameters)
        except ValidationError as e:
            details = "; ".join(
                f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in e.errors()
            )
            raise InvalidArgumentError(f"Invalid parameters for {self.name} action: {details}") from None
        return accepted.model_dump(exclude_none=True)

    def get_schema(self) -> Dict[str, Any]:
        """Get tool schema for the dispatch layer."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": {
                "type": "object",
                "properties": self.parameters,
                "required": list(self.required),
                "additionalProperties": False,
            },
        }


class GetChangeHistoryTool(StorageTool):
    """List recorded changes, newest first."""

    name = "get_change_history"
    description = "Get the paginated change history of a PRP document"
    required = ["fileId"]
    parameters = {
        "fileId": {"type": "string", "description": "Document identifier"},
        "historyLimit": {
            "type": "number",
            "minimum": 1,
            "maximum": 100,
            "default": DEFAULT_HISTORY_LIMIT,
            "description": "Number of history entries to return",
        },
        "historyOffset": {"type": "number", "minimum": 0, "default": 0, "description": "Offset for pagination"},
        "fromVersion": {"type": "number", "description": "Lowest version to include"},
        "toVersion": {"type": "number", "description": "Highest version to include"},
        "author": {"type": "string", "description": "Filter by author"},
        "changeType": {
            "type": "string",
            "enum": [k.value for k in ChangeKind],
            "description": "Filter by change type",
        },
    }

    async def execute(self, parameters: Dict[str, Any], tracker: ChangeTracker) -> ToolExecutionResult:
        limit = parameters.get("historyLimit") or DEFAULT_HISTORY_LIMIT
        offset = parameters.get("historyOffset") or 0

        page = await tracker.get_change_history(
            parameters["fileId"],
            limit=limit,
            offset=offset,
            from_version=parameters.get("fromVersion"),
            to_version=parameters.get("toVersion"),
            author=parameters.get("author"),
            change_type=parameters.get("changeType"),
        )

        return _json_result({
            "fileId": parameters["fileId"],
            "changes": [_history_entry(c) for c in page.changes],
            "pagination": {
                "total": page.total,
                "offset": offset,
                "limit": limit,
                "hasMore": page.has_more,
            },
        })


class GenerateDiffTool(StorageTool):
    """Render a diff between two versions."""

    name = "generate_diff"
    description = "Generate a unified, side-by-side or HTML diff between two versions"
    required = ["fileId", "fromVersion", "toVersion"]
    parameters = {
        "fileId": {"type": "string", "description": "Document identifier"},
        "fromVersion": {"type": "number", "description": "Older version"},
        "toVersion": {"type": "number", "description": "Newer version"},
        "diffFormat": {
            "type": "string",
            "enum": [f.value for f in DiffFormat],
            "default": DiffFormat.UNIFIED.value,
            "description": "Format for diff output",
        },
    }

    async def execute(self, parameters: Dict[str, Any], tracker: ChangeTracker) -> ToolExecutionResult:
        diff_format = parameters.get("diffFormat") or DiffFormat.UNIFIED.value
        diff = await tracker.generate_diff(
            parameters["fileId"], parameters["fromVersion"], parameters["toVersion"], diff_format
        )

        return _json_result({
            "fileId": parameters["fileId"],
            "fromVersion": parameters["fromVersion"],
            "toVersion": parameters["toVersion"],
            "format": diff_format,
            "diff": diff,
        })


class RollbackTool(StorageTool):
    """Roll a document back to an earlier version."""

    name = "rollback"
    description = "Restore a previous version by recording it as a new change"
    required = ["fileId", "targetVersion"]
    parameters = {
        "fileId": {"type": "string", "description": "Document identifier"},
        "targetVersion": {"type": "number", "description": "Version to restore"},
        "rollbackReason": {"type": "string", "description": "Reason for rollback"},
        "preserveChanges": {"type": "boolean", "description": "Whether to preserve changes during rollback"},
        "createBackup": {"type": "boolean", "default": True, "description": "Whether to create a backup"},
    }

    async def execute(self, parameters: Dict[str, Any], tracker: ChangeTracker) -> ToolExecutionResult:
        options = RollbackOptions(
            target_version=parameters["targetVersion"],
            preserve_changes=bool(parameters.get("preserveChanges", False)),
            create_backup=parameters.get("createBackup", True) is not False,
            reason=parameters.get("rollbackReason"),
        )
        result = await tracker.rollback_to_version(parameters["fileId"], options)

        return _json_result({
            "success": True,
            "fileId": parameters["fileId"],
            "targetVersion": options.target_version,
            "content": result.content,
            "changeRecord": result.change_record.summary_dict(),
        }, document_modified=True)


class DetectConflictsTool(StorageTool):
    """Check an incoming edit against newer versions."""

    name = "detect_conflicts"
    description = "Detect whether content edited from an older version conflicts with the latest version"
    required = ["fileId", "baseVersion"]
    parameters = {
        "fileId": {"type": "string", "description": "Document identifier"},
        "baseVersion": {"type": "number", "description": "Version the incoming edit started from"},
        "incomingContent": {"type": "string", "description": "Edited content"},
    }

    async def execute(self, parameters: Dict[str, Any], tracker: ChangeTracker) -> ToolExecutionResult:
        conflict = await tracker.detect_conflicts(
            parameters["fileId"], parameters["baseVersion"], parameters.get("incomingContent") or ""
        )

        return _json_result({
            "fileId": parameters["fileId"],
            "hasConflict": conflict is not None,
            "conflict": conflict.to_dict() if conflict else None,
        })


class ResolveConflictTool(StorageTool):
    """Resolve a detected conflict."""

    name = "resolve_conflict"
    description = "Resolve a conflict by accepting current, accepting incoming, merging or manual content"
    required = ["conflictId", "resolutionStrategy"]
    parameters = {
        "conflictId": {"type": "string", "description": "Conflict ID for resolution"},
        "resolutionStrategy": {
            "type": "string",
            "enum": [s.value for s in ResolutionStrategy],
            "description": "Strategy for resolving conflicts",
        },
        "fileId": {"type": "string", "description": "Document identifier when the conflict is not pending"},
        "mergedContent": {"type": "string", "description": "Manually merged or incoming content"},
        "resolvedBy": {"type": "string", "description": "Person resolving the conflict"},
    }

    async def execute(self, parameters: Dict[str, Any], tracker: ChangeTracker) -> ToolExecutionResult:
        conflict_id = parameters["conflictId"]
        resolution = await self._build_resolution(conflict_id, parameters, tracker)

        content = await tracker.resolve_conflict(conflict_id, resolution, parameters.get("resolvedBy"))

        return _json_result({
            "success": True,
            "conflictId": conflict_id,
            "resolution": parameters["resolutionStrategy"],
            "resolvedContent": content,
            "resolvedBy": resolution.resolved_by,
            "resolvedAt": resolution.resolved_at.isoformat() if resolution.resolved_at else None,
        })

    async def _build_resolution(
        self, conflict_id: str, parameters: Dict[str, Any], tracker: ChangeTracker
    ) -> ConflictResolution:
        overrides = {
            "resolution": parameters["resolutionStrategy"],
            "merged_content": parameters.get("mergedContent"),
        }

        if not parameters.get("fileId"):
            pending = tracker.get_pending_conflict(conflict_id)
            return dataclasses.replace(pending, **overrides)

        file_id = parameters["fileId"]
        current_version = await tracker.get_current_version(file_id)
        return ConflictResolution(
            conflict_id=conflict_id,
            file_id=file_id,
            base_version=0,
            conflicting_versions=[current_version] if current_version else [],
            **overrides,
        )


class GetAuditTrailTool(StorageTool):
    """Chronological audit summary."""

    name = "get_audit_trail"
    description = "Get the audit trail of a document, optionally bounded by dates"
    required = ["fileId"]
    parameters = {
        "fileId": {"type": "string", "description": "Document identifier"},
        "fromDate": {"type": "string", "description": "Start date for audit trail (ISO format)"},
        "toDate": {"type": "string", "description": "End date for audit trail (ISO format)"},
    }

    async def execute(self, parameters: Dict[str, Any], tracker: ChangeTracker) -> ToolExecutionResult:
        trail = await tracker.get_audit_trail(
            parameters["fileId"],
            _parse_date(parameters.get("fromDate"), "fromDate"),
            _parse_date(parameters.get("toDate"), "toDate"),
        )
        return _json_result({"fileId": parameters["fileId"], "auditTrail": trail.to_dict()})


class RecordChangeTool(StorageTool):
    """Record an edit made by another component."""

    name = "record_change"
    description = "Record a new version of a document"
    required = ["fileId", "changeType"]
    parameters = {
        "fileId": {"type": "string", "description": "Document identifier"},
        "changeType": {"type": "string", "enum": [k.value for k in ChangeKind], "description": "Kind of change"},
        "contentBefore": {"type": "string", "description": "Content before the change"},
        "contentAfter": {"type": "string", "description": "Content after the change"},
        "description": {"type": "string", "description": "Change summary"},
        "author": {"type": "string", "description": "Author of the change"},
    }

    async def execute(self, parameters: Dict[str, Any], tracker: ChangeTracker) -> ToolExecutionResult:
        record = await tracker.record_change(
            parameters["fileId"],
            parameters["changeType"],
            parameters.get("contentBefore") or "",
            parameters.get("contentAfter") or "",
            parameters.get("description") or "",
            parameters.get("author"),
        )
        return _json_result({"success": True, "changeRecord": record.summary_dict()}, document_modified=True)


class DeleteDocumentTool(StorageTool):
    """Record the deletion of a document."""

    name = "delete_document"
    description = "Record that a PRP document was deleted"
    required = ["fileId"]
    parameters = {
        "fileId": {"type": "string", "description": "Document identifier"},
        "author": {"type": "string", "description": "Who deleted the document"},
    }

    async def execute(self, parameters: Dict[str, Any], tracker: ChangeTracker) -> ToolExecutionResult:
        file_id = parameters["fileId"]
        current_content = await tracker.get_current_content(file_id)
        record = await tracker.record_change(
            file_id,
            ChangeKind.DELETE,
            current_content,
            "",
            "PRP deleted via storage tool",
            parameters.get("author"),
        )

        return _json_result({
            "success": True,
            "fileId": file_id,
            "deleted": True,
            "changeRecord": record.summary_dict(),
        }, document_modified=True)


class ToolRegistry:
    """Registry of available storage tools."""

    def __init__(self):
        self.tools: Dict[str, StorageTool] = {}
        self._register_default_tools()

    def _register_default_tools(self):
        for tool in (
            GetChangeHistoryTool(),
            GenerateDiffTool(),
            RollbackTool(),
            DetectConflictsTool(),
            ResolveConflictTool(),
            GetAuditTrailTool(),
            RecordChangeTool(),
            DeleteDocumentTool(),
        ):
            self.register_tool(tool)

    def register_tool(self, tool: StorageTool) -> None:
        self.tools[tool.name] = tool

    def get_tool(self, name: str) -> Optional[StorageTool]:
        return self.tools.get(name)

    def get_tool_schemas(self) -> List[Dict[str, Any]]:
        return [tool.get_schema() for tool in self.tools.values()]

    def list_tools(self) -> List[str]:
        return list(self.tools.keys())


def get_all_tools() -> ToolRegistry:
    """Get registry with all available tools."""
    return ToolRegistry()


async def execute_action(
    action: str,
    parameters: Dict[str, Any],
    tracker: ChangeTracker,
    registry: Optional[ToolRegistry] = None,
) -> ToolExecutionResult:
    """
    Run a named storage action.

    Tracker errors are returned as failed results; anything else propagates.
    """
    registry = registry or get_all_tools()
    tool = registry.get_tool(action)
    if tool is None:
        return ToolExecutionResult(success=False, error=f"Unknown action: {action}")

    try:
        accepted = tool.validate(parameters)
        return await tool.execute(accepted, tracker)
    except ChangeTrackerError as e:
        logger.warning(f"Storage action {action} failed: {e}")
        return ToolExecutionResult(success=False, error=f"Error in storage management: {e}")
