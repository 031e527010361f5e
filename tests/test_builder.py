"""Tests for building the resource graph from declarations."""

import pytest

from landform.orchestrator.builder import ResourceGraphBuilder
from landform.utils.errors import (
    ConfigurationError,
    CycleError,
    ExpressionError,
    UnresolvedReferenceError,
)

from helpers import declare, make_graph


class TestResourceGraphBuilder:
    """Test ResourceGraphBuilder."""

    def test_edges_from_references_and_depends_on(self, registry):
        """Test that references and depends_on both create edges."""
        graph = make_graph(registry, [
            declare("fake_thing", "network", zone="a"),
            declare("fake_thing", "subnet", zone="a", network="${fake_thing.network.id}"),
            declare("fake_item", "app", depends_on=["fake_thing.subnet"]),
        ])

        assert graph.addresses() == ["fake_thing.network", "fake_thing.subnet", "fake_item.app"]
        assert graph.dependencies("fake_thing.subnet") == ["fake_thing.network"]
        assert graph.dependencies("fake_item.app") == ["fake_thing.subnet"]
        assert graph.dependents("fake_thing.network") == ["fake_thing.subnet"]
        assert graph.topological_order() == [
            "fake_thing.network", "fake_thing.subnet", "fake_item.app"
        ]

    def test_declared_attribute_reference(self, registry):
        """Test referencing a declared (non-computed) attribute."""
        graph = make_graph(registry, [
            declare("fake_item", "a", size=1),
            declare("fake_item", "b", size="${fake_item.a.size}"),
        ])

        assert graph.dependencies("fake_item.b") == ["fake_item.a"]

    def test_computed_attribute_reference(self, registry):
        """Test referencing a provider-computed attribute."""
        graph = make_graph(registry, [
            declare("fake_thing", "a"),
            declare("fake_item", "b", parent="${fake_thing.a.arn}"),
        ])

        assert "fake_item.b" in graph
        assert graph.schema_for("fake_thing.a").immutable == frozenset({"zone"})

    def test_undeclared_resource(self, registry):
        """Test a reference to a resource that is not declared."""
        with pytest.raises(UnresolvedReferenceError) as exc_info:
            make_graph(registry, [declare("fake_item", "b", parent="${fake_item.missing.id}")])

        assert exc_info.value.reference == "fake_item.missing.id"
        assert exc_info.value.context.address == "fake_item.b"

    def test_unknown_attribute(self, registry):
        """Test a reference to an attribute the target does not have."""
        with pytest.raises(UnresolvedReferenceError) as exc_info:
            make_graph(registry, [
                declare("fake_item", "a", size=1),
                declare("fake_item", "b", parent="${fake_item.a.colour}"),
            ])

        assert "colour" in exc_info.value.message
        assert any("id" in s and "size" in s for s in exc_info.value.suggestions)

    def test_undefined_variable(self, registry):
        """Test a reference to an undefined variable."""
        with pytest.raises(UnresolvedReferenceError) as exc_info:
            make_graph(registry, [declare("fake_item", "a", size="${var.size}")])

        assert "LANDFORM_VAR_size" in exc_info.value.suggestions[0]

    def test_defined_variable(self, registry):
        """Test that a defined variable adds no edge."""
        graph = make_graph(registry, [declare("fake_item", "a", size="${var.size}")], {"size": 2})

        assert graph.dependencies("fake_item.a") == []
        assert graph.variables == {"size": 2}

    def test_undeclared_depends_on(self, registry):
        """Test depends_on naming a missing resource."""
        with pytest.raises(UnresolvedReferenceError):
            make_graph(registry, [declare("fake_item", "a", depends_on=["fake_item.ghost"])])

    def test_duplicate_address(self, registry):
        """Test that an address may be declared once."""
        with pytest.raises(ConfigurationError) as exc_info:
            make_graph(registry, [declare("fake_item", "a"), declare("fake_item", "a")])

        assert "more than once" in exc_info.value.message

    def test_unsupported_type(self, registry):
        """Test that every type needs a provider."""
        with pytest.raises(ConfigurationError) as exc_info:
            make_graph(registry, [declare("cloud_bucket", "a")])

        assert "cloud_bucket" in exc_info.value.message

    def test_malformed_expression(self, registry):
        """Test that expression syntax errors surface while building."""
        with pytest.raises(ExpressionError):
            make_graph(registry, [declare("fake_item", "a", size="${var.size ==}")], {"size": 1})

    def test_cycle(self, registry):
        """Test that reference cycles are rejected with the cycle path."""
        with pytest.raises(CycleError) as exc_info:
            make_graph(registry, [
                declare("fake_item", "a", other="${fake_item.b.id}"),
                declare("fake_item", "b", other="${fake_item.c.id}"),
                declare("fake_item", "c", depends_on=["fake_item.a"]),
            ])

        assert exc_info.value.cycle == ["fake_item.a", "fake_item.b", "fake_item.c", "fake_item.a"]

    def test_without_registry(self):
        """Test that only id is computed when no registry is given."""
        builder = ResourceGraphBuilder()
        graph = builder.build([
            declare("anything_x", "a"),
            declare("anything_x", "b", parent="${anything_x.a.id}"),
        ])

        assert graph.dependencies("anything_x.b") == ["anything_x.a"]

        with pytest.raises(UnresolvedReferenceError):
            builder.build([
                declare("anything_x", "a"),
                declare("anything_x", "b", parent="${anything_x.a.arn}"),
            ])
