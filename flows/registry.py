"""
Flow Registry — The flow authoring store as seen by the engine.

Publishing validates a flow and stores it under a new version. Stored
versions are never mutated: sessions pin (flow_id, version) and keep
executing against it after the operator publishes an edit.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from core.errors import FlowValidationError
from flows.graph import FlowGraph, ValidationReport
from models.schemas import FlowDefinition

logger = structlog.get_logger()


class FlowRegistry:
    """Versioned, in-process flow store with cached graphs."""

    def __init__(self, known_types: set[str] = None):
        self._known_types = known_types
        self._versions: dict[str, dict[int, FlowGraph]] = {}
        self._order: list[str] = []              # flow ids in first-publish order

    # ── Publishing ────────────────────────────────────────────

    def publish(self, flow: FlowDefinition) -> ValidationReport:
        """
        Validate and store a flow. Raises FlowValidationError on fatal errors.
        A version of 0 is replaced with latest + 1.
        """
        graph = FlowGraph(flow)
        report = graph.validate(self._known_types)
        if not report.ok:
            logger.error("flow_validation_failed",
                         flow_id=flow.id, errors=report.errors)
            raise FlowValidationError(flow.id, report.errors, report.warnings)

        versions = self._versions.setdefault(flow.id, {})
        version = flow.version or (max(versions) + 1 if versions else 1)
        if version in versions:
            raise FlowValidationError(
                flow.id, [f"version {version} is already published"], report.warnings,
            )
        if flow.id not in self._order:
            self._order.append(flow.id)

        stored = flow.model_copy(deep=True, update={"version": version})
        versions[version] = FlowGraph(stored)

        for warning in report.warnings:
            logger.warning("flow_validation_warning", flow_id=flow.id, warning=warning)
        logger.info("flow_published",
                    flow_id=flow.id,
                    version=version,
                    nodes=len(stored.nodes),
                    edges=len(stored.edges))
        return report

    def publish_from_config(self, config: list[dict[str, Any]]):
        """Publish flows from the YAML `flows:` list."""
        for raw in config:
            self.publish(FlowDefinition(**raw))
        logger.info("flows_loaded", count=len(config))

    # ── Lookup ────────────────────────────────────────────────

    def get(self, flow_id: str, version: int = None) -> Optional[FlowGraph]:
        versions = self._versions.get(flow_id)
        if not versions:
            return None
        if version is None:
            return versions[max(versions)]
        return versions.get(version)

    def latest(self, flow_id: str) -> Optional[FlowGraph]:
        return self.get(flow_id)

    def list_latest(self) -> list[FlowGraph]:
        """Latest version of every flow, in first-publish order."""
        return [self.get(flow_id) for flow_id in self._order]

    def versions(self, flow_id: str) -> list[int]:
        return sorted(self._versions.get(flow_id, {}))
