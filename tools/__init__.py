"""
Tool system — definitions, scoped lookup and resilient execution.
"""
from tools.models import (
    Tool, ToolContext, ToolResult, ToolScope, ToolCategory, normalize_result,
)
from tools.manager import ToolManager, is_transient_error
from tools.factories import (
    create_data_enrichment, create_validation, create_computation, create_api_call,
    ValidationResult, ValidationIssue,
)

__all__ = [
    "Tool", "ToolContext", "ToolResult", "ToolScope", "ToolCategory", "normalize_result",
    "ToolManager", "is_transient_error",
    "create_data_enrichment", "create_validation", "create_computation", "create_api_call",
    "ValidationResult", "ValidationIssue",
]
