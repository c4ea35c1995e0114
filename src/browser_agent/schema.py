"""JSON-schema normalization for provider structured-output modes."""

from __future__ import annotations

import copy
from typing import Any, Dict, Optional, Type

from pydantic import BaseModel

_DROPPED_KEYS = {"title", "$defs", "definitions", "additionalProperties", "discriminator"}


class SchemaOptimizer:
    @staticmethod
    def create_optimized_json_schema(model: Type[BaseModel]) -> Dict[str, Any]:
        """Return ``model``'s JSON schema with every ``$ref`` inlined and strict-mode rules applied."""
        original = model.model_json_schema()
        defs = original.get("$defs", {}) or {}
        flattened = SchemaOptimizer._optimize(original, defs)
        SchemaOptimizer._make_strict(flattened)
        return flattened

    @staticmethod
    def _optimize(node: Any, defs: Dict[str, Any], seen: Optional[set] = None) -> Any:
        seen = seen or set()
        if isinstance(node, list):
            return [SchemaOptimizer._optimize(item, defs, seen) for item in node]
        if not isinstance(node, dict):
            return node

        ref = node.get("$ref")
        if isinstance(ref, str):
            name = ref.split("/")[-1]
            if name in seen:
                raise ValueError(f"Recursive schema reference is not supported: {name}")
            target = defs.get(name)
            if target is None:
                raise ValueError(f"Unresolved schema reference: {ref}")
            resolved = SchemaOptimizer._optimize(copy.deepcopy(target), defs, seen | {name})
            # Sibling keys such as "description" survive next to the inlined target.
            for key, value in node.items():
                if key != "$ref" and key not in _DROPPED_KEYS:
                    resolved[key] = SchemaOptimizer._optimize(value, defs, seen)
            return resolved

        result: Dict[str, Any] = {}
        for key, value in node.items():
            if key in _DROPPED_KEYS:
                continue
            if key == "properties" and isinstance(value, dict):
                # Property names may legitimately be "title".
                result[key] = {name: SchemaOptimizer._optimize(sub, defs, seen) for name, sub in value.items()}
                continue
            if key == "not" and value in ({}, None):
                continue
            result[key] = SchemaOptimizer._optimize(value, defs, seen)

        any_of = result.get("anyOf")
        if isinstance(any_of, list):
            variants = [variant for variant in any_of if variant not in ({}, {"not": {}})]
            if len(variants) == 1:
                result.pop("anyOf")
                merged = dict(variants[0])
                merged.update(result)
                result = merged
            else:
                result["anyOf"] = variants

        if result.get("type") == "object" and "properties" not in result and "anyOf" not in result:
            result["properties"] = {}
        return result

    @staticmethod
    def _make_strict(node: Any) -> None:
        if isinstance(node, list):
            for item in node:
                SchemaOptimizer._make_strict(item)
            return
        if not isinstance(node, dict):
            return
        properties = node.get("properties")
        if node.get("type") == "object" or isinstance(properties, dict):
            properties = properties or {}
            node["additionalProperties"] = False
            node["required"] = list(properties.keys())
            for sub in properties.values():
                SchemaOptimizer._make_strict(sub)
        for key, value in node.items():
            if key in {"properties", "required"}:
                continue
            if isinstance(value, (dict, list)):
                SchemaOptimizer._make_strict(value)
