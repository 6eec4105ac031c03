"""ManagedUser CustomResourceDefinition generation.

The OpenAPI schema is derived from the pydantic spec model and rewritten
into a Kubernetes structural schema: references are inlined, optional fields
become ``nullable`` and JSON-Schema keywords the API server rejects are
removed. Every inlined node owns its values, so the rendered YAML has
no anchors, and descriptions keep only the first docstring paragraph.

Example:
    >>> from kuo.crd import build_crd, render_crds
    >>> crd = build_crd()
    >>> crd["spec"]["names"]["shortNames"]
    ['mu']
    >>> print(render_crds())
"""

from __future__ import annotations

import copy
from typing import Any

import yaml

from kuo.models.managed_user import (
    GROUP,
    KIND,
    PLURAL,
    SHORT_NAMES,
    SINGULAR,
    VERSION,
    ManagedUserSpec,
)

IMMUTABLE_RULE = {
    "rule": "self == oldSelf",
    "message": "Cannot change field. The value is immutable.",
}

PRINTER_COLUMNS = [
    {
        "name": "Email",
        "type": "string",
        "description": "User's email",
        "jsonPath": ".spec.email",
    },
    {
        "name": "Full Name",
        "type": "string",
        "description": "User's real name",
        "jsonPath": ".spec.fullName",
    },
]

# Keywords pydantic emits that have no place in a structural schema
_DROPPED_KEYWORDS = frozenset({"title", "additionalProperties", "$defs", "examples"})


def _resolve_ref(ref: str, defs: dict[str, Any]) -> dict[str, Any]:
    name = ref.rsplit("/", 1)[-1]
    if name not in defs:
        msg = f"Unresolvable schema reference: {ref}"
        raise ValueError(msg)
    return defs[name]


def _summary(description: str) -> str:
    """First paragraph of a docstring-derived description, on one line."""
    return " ".join(description.strip().split("\n\n", 1)[0].split())


def structural_schema(schema: dict[str, Any], defs: dict[str, Any] | None = None) -> dict[str, Any]:
    """Convert a pydantic JSON schema node into a structural schema node.

    Args:
        schema: JSON schema node as produced by ``model_json_schema``.
        defs: Shared ``$defs`` of the root schema.

    Returns:
        Equivalent node with references inlined and nullability explicit.

    Raises:
        ValueError: If a reference cannot be resolved or a union is not a
            plain optional.
    """
    defs = defs if defs is not None else schema.get("$defs", {})

    if "$ref" in schema:
        merged = {**_resolve_ref(schema["$ref"], defs), **{k: v for k, v in schema.items() if k != "$ref"}}
        return structural_schema(merged, defs)

    if "anyOf" in schema:
        variants = [variant for variant in schema["anyOf"] if variant.get("type") != "null"]
        if len(variants) != 1:
            msg = "Only optional unions can be expressed in a structural schema"
            raise ValueError(msg)
        rest = {k: v for k, v in schema.items() if k != "anyOf"}
        node = structural_schema({**variants[0], **rest}, defs)
        if len(variants) < len(schema["anyOf"]):
            node["nullable"] = True
        return node

    node: dict[str, Any] = {}
    for key, value in schema.items():
        if key in _DROPPED_KEYWORDS:
            continue
        if key == "default" and value is None:
            continue
        if key == "description":
            node[key] = _summary(value)
            continue
        if key == "properties":
            node[key] = {name: structural_schema(prop, defs) for name, prop in value.items()}
        elif key == "items":
            node[key] = structural_schema(value, defs)
        else:
            node[key] = copy.deepcopy(value)
    return node


def spec_schema() -> dict[str, Any]:
    """Structural schema of ``ManagedUser.spec``."""
    schema = structural_schema(ManagedUserSpec.model_json_schema(by_alias=True))
    schema["properties"]["email"]["x-kubernetes-validations"] = [dict(IMMUTABLE_RULE)]
    return schema


def build_crd() -> dict[str, Any]:
    """Build the ManagedUser CustomResourceDefinition."""
    return {
        "apiVersion": "apiextensions.k8s.io/v1",
        "kind": "CustomResourceDefinition",
        "metadata": {"name": f"{PLURAL}.{GROUP}"},
        "spec": {
            "group": GROUP,
            "names": {
                "kind": KIND,
                "plural": PLURAL,
                "singular": SINGULAR,
                "shortNames": list(SHORT_NAMES),
                "categories": [],
            },
            "scope": "Cluster",
            "versions": [
                {
                    "name": VERSION,
                    "served": True,
                    "storage": True,
                    "additionalPrinterColumns": [dict(column) for column in PRINTER_COLUMNS],
                    "schema": {
                        "openAPIV3Schema": {
                            "description": f"{KIND} declares a person who should receive cluster access.",
                            "type": "object",
                            "required": ["spec"],
                            "properties": {"spec": spec_schema()},
                        }
                    },
                    "subresources": {},
                }
            ],
        },
    }


def render_crds() -> str:
    """Render every CustomResourceDefinition of the operator as YAML."""
    return yaml.safe_dump_all([build_crd()], default_flow_style=False, sort_keys=False)


__all__ = [
    "IMMUTABLE_RULE",
    "PRINTER_COLUMNS",
    "build_crd",
    "render_crds",
    "spec_schema",
    "structural_schema",
]
