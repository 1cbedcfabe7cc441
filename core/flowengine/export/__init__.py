"""Flow export documents and secret scanning."""

from flowengine.export.document import (
    CredentialReference,
    FlowExport,
    FlowMetadata,
    FlowSettings,
    VariableDefinition,
    build_flow_export,
    load_flow_export,
)
from flowengine.export.secrets import SecretMatch, redact_secret, scan_for_secrets

__all__ = [
    "FlowExport",
    "FlowMetadata",
    "FlowSettings",
    "CredentialReference",
    "VariableDefinition",
    "load_flow_export",
    "build_flow_export",
    "SecretMatch",
    "scan_for_secrets",
    "redact_secret",
]
