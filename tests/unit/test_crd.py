"""Unit tests for CustomResourceDefinition generation."""

from __future__ import annotations

import json
from typing import Any

import pytest
import yaml

from kuo.crd import IMMUTABLE_RULE, build_crd, render_crds, spec_schema, structural_schema


def _walk(node: Any) -> list[dict[str, Any]]:
    """Every mapping nested in a schema."""
    found: list[dict[str, Any]] = []
    if isinstance(node, dict):
        found.append(node)
        for value in node.values():
            found.extend(_walk(value))
    elif isinstance(node, list):
        for value in node:
            found.extend(_walk(value))
    return found


class TestBuildCrd:
    """Tests for the ManagedUser CRD."""

    def test_names_and_scope(self) -> None:
        """Test group, names and cluster scope."""
        crd = build_crd()
        assert crd["metadata"]["name"] == "managedusers.kuo.github.io"
        assert crd["spec"]["group"] == "kuo.github.io"
        assert crd["spec"]["scope"] == "Cluster"
        names = crd["spec"]["names"]
        assert names["kind"] == "ManagedUser"
        assert names["plural"] == "managedusers"
        assert names["shortNames"] == ["mu"]

    def test_single_served_storage_version(self) -> None:
        """Test v1 is the only version."""
        (version,) = build_crd()["spec"]["versions"]
        assert version["name"] == "v1"
        assert version["served"] is True
        assert version["storage"] is True

    def test_printer_columns(self) -> None:
        """Test email and full name are shown by kubectl get."""
        (version,) = build_crd()["spec"]["versions"]
        columns = {c["name"]: c["jsonPath"] for c in version["additionalPrinterColumns"]}
        assert columns == {"Email": ".spec.email", "Full Name": ".spec.fullName"}

    def test_spec_required(self) -> None:
        """Test objects must carry a spec."""
        (version,) = build_crd()["spec"]["versions"]
        assert version["schema"]["openAPIV3Schema"]["required"] == ["spec"]


class TestSpecSchema:
    """Tests for the structural spec schema."""

    def test_email_immutable(self) -> None:
        """Test the e-mail address cannot change once set."""
        email = spec_schema()["properties"]["email"]
        assert email["type"] == "string"
        assert email["nullable"] is True
        assert email["x-kubernetes-validations"] == [IMMUTABLE_RULE]

    def test_wire_field_names(self) -> None:
        """Test properties use the camelCase wire names."""
        properties = spec_schema()["properties"]
        assert set(properties) == {"email", "fullName", "inlinePermissions"}
        inline = properties["inlinePermissions"]["properties"]
        assert set(inline) == {"clusterPermissions", "namespacedPermissions"}
        rule = inline["clusterPermissions"]["items"]["properties"]
        assert "nonResourceURLs" in rule
        assert inline["clusterPermissions"]["items"]["required"] == ["verbs"]

    def test_structural(self) -> None:
        """Test no JSON-Schema only constructs remain."""
        text = json.dumps(spec_schema())
        assert "$ref" not in text
        assert "anyOf" not in text
        for node in _walk(spec_schema()):
            assert "title" not in node
            assert node.get("default", "unset") is not None


class TestStructuralSchema:
    """Tests for structural_schema on hand-written input."""

    def test_ref_inlined(self) -> None:
        """Test references resolve against $defs."""
        schema = {
            "$defs": {"Thing": {"type": "object", "title": "Thing", "properties": {"a": {"type": "string"}}}},
            "type": "object",
            "properties": {"thing": {"$ref": "#/$defs/Thing"}},
        }
        assert structural_schema(schema) == {
            "type": "object",
            "properties": {"thing": {"type": "object", "properties": {"a": {"type": "string"}}}},
        }

    def test_real_union_rejected(self) -> None:
        """Test unions other than optional cannot be expressed."""
        with pytest.raises(ValueError, match="optional unions"):
            structural_schema({"anyOf": [{"type": "string"}, {"type": "integer"}]})

    def test_unresolvable_ref(self) -> None:
        """Test a dangling reference is an error."""
        with pytest.raises(ValueError, match="Unresolvable"):
            structural_schema({"$ref": "#/$defs/Missing"})


class TestRenderCrds:
    """Tests for render_crds."""

    def test_yaml_documents(self) -> None:
        """Test the rendering parses back to the CRD."""
        documents = list(yaml.safe_load_all(render_crds()))
        assert documents == [build_crd()]

    def test_no_yaml_aliases(self) -> None:
        """Test shared schema parts are written out in full."""
        rendered = render_crds()
        assert "&id" not in rendered
        assert "*id" not in rendered

    def test_descriptions_are_summaries(self) -> None:
        """Test descriptions carry only the first docstring paragraph."""
        descriptions = [node["description"] for node in _walk(spec_schema()) if "description" in node]
        assert descriptions
        for description in descriptions:
            assert "Attributes:" not in description
            assert "\n" not in description
