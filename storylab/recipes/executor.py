"""Node executor — resolves one node's inputs, invokes its capability, records the result."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from storylab import config
from storylab.adaptors.base import GenerationOptions
from storylab.errors import ExecutionError, StoryLabError
from storylab.models import ExecutionResult, RecipeNode, utc_now
from storylab.parsing import extract_json
from storylab.prompts import resolve_variables
from storylab.recipes.graph import get_path, parse_source
from storylab.resolver import AdaptorResolver

logger = logging.getLogger(__name__)


def resolve_inputs(node: RecipeNode, external_input: dict | None, outputs: dict[str, Any]) -> dict[str, Any]:
    """Map every inputMapping field to a value. Missing data resolves to None, never raises."""
    external_input = external_input or {}
    resolved: dict[str, Any] = {}
    for field_name, spec in node.input_mapping.items():
        ref = parse_source(spec.source)
        if ref.kind == "external":
            value = get_path(external_input, ref.path)
        elif ref.kind == "node":
            value = get_path(outputs.get(ref.node_id), ref.path) if ref.path else outputs.get(ref.node_id)
        else:
            value = ref.literal
        if value is None and spec.required:
            logger.warning(f"Node {node.id}: required input '{field_name}' from '{spec.source}' is missing")
        resolved[field_name] = value
    return resolved


# ---------------------------------------------------------------------------
# Data-processing operations (no AI call)
# ---------------------------------------------------------------------------


def _merge(inputs: dict[str, Any]) -> Any:
    values = [v for v in inputs.values() if v is not None]
    if values and all(isinstance(v, list) for v in values):
        # Zip lists by position, merging dict items
        merged = []
        for i in range(max(len(v) for v in values)):
            item: dict[str, Any] = {}
            for name, seq in inputs.items():
                if not isinstance(seq, list) or i >= len(seq):
                    continue
                if isinstance(seq[i], dict):
                    item.update(seq[i])
                else:
                    item[name] = seq[i]
            merged.append(item)
        return merged
    merged_dict: dict[str, Any] = {}
    for name, value in inputs.items():
        if isinstance(value, dict):
            merged_dict.update(value)
        else:
            merged_dict[name] = value
    return merged_dict


def _concat(inputs: dict[str, Any]) -> list:
    combined: list = []
    for value in inputs.values():
        if isinstance(value, list):
            combined.extend(value)
        elif value is not None:
            combined.append(value)
    return combined


def run_data_processing(node: RecipeNode, inputs: dict[str, Any]) -> Any:
    operation = node.parameters.get("operation", "passthrough")
    if operation == "merge":
        return _merge(inputs)
    if operation == "concat":
        return _concat(inputs)
    if operation == "parse_json":
        raw = next((v for v in inputs.values() if v is not None), "")
        return raw if isinstance(raw, (dict, list)) else extract_json(str(raw))
    if operation == "template":
        return resolve_variables(node.prompt, inputs)
    if operation == "passthrough":
        return next(iter(inputs.values())) if len(inputs) == 1 else inputs
    raise ExecutionError(f"Unknown data_processing operation '{operation}'", node.id, "UNKNOWN_OPERATION")


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


class NodeExecutor:
    """Runs single nodes. Failures become unsuccessful ExecutionResults, never exceptions."""

    def __init__(
        self,
        resolver: AdaptorResolver,
        retry_attempts: int | None = None,
        project_id: str | None = None,
        stage_type: str | None = None,
    ):
        self.resolver = resolver
        self.retry_attempts = max(1, retry_attempts or config.RETRY_ATTEMPTS)
        self.project_id = project_id
        self.stage_type = stage_type

    async def execute(self, node: RecipeNode, external_input: dict | None, outputs: dict[str, Any]) -> ExecutionResult:
        inputs = resolve_inputs(node, external_input, outputs)
        attempts = self.retry_attempts if node.error_handling.on_error == "retry" else 1
        started_at = utc_now()
        start = time.perf_counter()
        error: dict | None = None

        timeout = float(node.parameters.get("timeoutMs") or config.DEFAULT_NODE_TIMEOUT_MS) / 1000

        for attempt in range(1, attempts + 1):
            try:
                output = await asyncio.wait_for(self.invoke(node, inputs), timeout=timeout)
                duration = (time.perf_counter() - start) * 1000
                logger.info(f"Node {node.id} succeeded in {duration:.0f}ms (attempt {attempt})")
                return ExecutionResult(
                    success=True,
                    node_id=node.id,
                    node_name=node.name,
                    node_type=node.type,
                    input=inputs,
                    output=output,
                    duration=duration,
                    started_at=started_at,
                    completed_at=utc_now(),
                    attempts=attempt,
                )
            except asyncio.TimeoutError:
                error = {"message": f"Node timed out after {timeout:g}s", "code": "TIMEOUT"}
                logger.warning(f"Node {node.id} attempt {attempt}/{attempts} timed out")
            except StoryLabError as e:
                error = {"message": e.message, "code": e.code}
                logger.warning(f"Node {node.id} attempt {attempt}/{attempts} failed: {e.message}")
            except Exception as e:
                error = {"message": str(e), "code": "EXECUTION_ERROR"}
                logger.error(f"Node {node.id} attempt {attempt}/{attempts} raised: {e}", exc_info=True)

        return ExecutionResult(
            success=False,
            node_id=node.id,
            node_name=node.name,
            node_type=node.type,
            input=inputs,
            output=None,
            duration=(time.perf_counter() - start) * 1000,
            started_at=started_at,
            completed_at=utc_now(),
            attempts=attempts,
            error=error,
        )

    async def invoke(self, node: RecipeNode, inputs: dict[str, Any]) -> Any:
        """One capability call for the node. Raises on failure."""
        if node.type == "data_processing":
            return run_data_processing(node, inputs)

        capability = node.capability
        if capability is None or node.ai_model is None:
            raise ExecutionError(f"Node {node.id} has no AI capability configured", node.id, "INVALID_NODE")

        resolution = await self.resolver.resolve_adaptor(
            self.project_id,
            self.stage_type,
            capability,
            {"adaptorId": node.ai_model.provider, "modelId": node.ai_model.model_name},
        )
        prompt = resolve_variables(node.prompt, inputs)
        options = self._options(node, inputs)
        result = await resolution.adaptor.invoke(capability, prompt, options)

        if capability == "text":
            if node.output_format == "json":
                return extract_json(result.text or "")
            return result.text
        return result.payload

    @staticmethod
    def _options(node: RecipeNode, inputs: dict[str, Any]) -> GenerationOptions:
        params = node.parameters
        reference = None
        ref_field = params.get("referenceImageInput")
        if ref_field:
            reference = inputs.get(ref_field)
        return GenerationOptions(
            temperature=node.ai_model.temperature if node.ai_model else None,
            max_tokens=node.ai_model.max_tokens if node.ai_model else None,
            response_format="json" if node.output_format == "json" else "text",
            reference_image_url=reference,
            size=params.get("resolution"),
            aspect_ratio=params.get("aspectRatio"),
            duration_seconds=params.get("durationSeconds"),
        )
