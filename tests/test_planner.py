"""Tests for change-set planning."""

import pytest

from landform.orchestrator.expressions import UNKNOWN
from landform.orchestrator.planner import ChangeAction, Planner
from landform.state.models import DeposedObject, ResourceState, StateSnapshot
from landform.utils.errors import PlanError

from helpers import apply_changes, declare, keys, make_graph, plan_changes


def chain(**lifecycle):
    """fake_thing.a <- fake_thing.b (b.parent references a.id)."""
    return [
        declare("fake_thing", "a", lifecycle=lifecycle or None, zone="us-1"),
        declare("fake_thing", "b", zone="us-1", parent="${fake_thing.a.id}"),
    ]


def assert_consistent(change_set):
    """Every entry appears after all of its predecessors."""
    seen = set()
    for entry in change_set.entries:
        assert set(entry.predecessors) <= seen, entry.key
        seen.add(entry.key)


class TestInitialPlan:
    """Test planning against an empty snapshot."""

    def test_everything_created_in_dependency_order(self, registry, snapshot):
        """Test that dependencies are created before dependents."""
        change_set = plan_changes(registry, [
            declare("fake_item", "app", depends_on=["fake_thing.subnet"]),
            declare("fake_thing", "subnet", network="${fake_thing.network.id}"),
            declare("fake_thing", "network"),
            declare("fake_item", "standalone"),
        ], snapshot)

        assert keys(change_set) == [
            "create:fake_thing.network",
            "create:fake_thing.subnet",
            "create:fake_item.app",
            "create:fake_item.standalone",
        ]
        assert change_set.get("create:fake_item.app").predecessors == ["create:fake_thing.subnet"]
        assert_consistent(change_set)
        assert change_set.summary() == {
            'create': 4, 'update': 0, 'replace': 0, 'delete': 0, 'unchanged': 0
        }

    def test_independent_resources_keep_declaration_order(self, registry, snapshot):
        """Test the tie-break among independent resources."""
        change_set = plan_changes(registry, [
            declare("fake_item", "z"),
            declare("fake_item", "a"),
            declare("fake_item", "m"),
        ], snapshot)

        assert keys(change_set) == ["create:fake_item.z", "create:fake_item.a", "create:fake_item.m"]

    def test_computed_reference_unknown_until_created(self, registry, snapshot):
        """Test that references to a resource being created are unknown."""
        change_set = plan_changes(registry, chain(), snapshot)

        assert change_set.get("create:fake_thing.b").planned["parent"] is UNKNOWN
        assert change_set.to_dict()["entries"][1]["after"]["parent"] == "(known after apply)"

    def test_variables_resolved(self, registry, snapshot):
        """Test that variables are substituted into planned values."""
        change_set = plan_changes(
            registry, [declare("fake_item", "a", name="web-${var.env}")], snapshot, {"env": "prod"}
        )

        assert change_set.get("create:fake_item.a").planned == {"name": "web-prod"}
        assert change_set.variables == {"env": "prod"}

    def test_waves(self, registry, snapshot):
        """Test grouping entries into parallel waves."""
        change_set = plan_changes(registry, chain() + [declare("fake_item", "c")], snapshot)

        assert change_set.waves() == [
            ["create:fake_thing.a", "create:fake_item.c"],
            ["create:fake_thing.b"],
        ]


class TestIncrementalPlan:
    """Test planning against a snapshot produced by an earlier apply."""

    def test_idempotent(self, registry):
        """Test that re-planning after a successful apply yields no changes."""
        declarations = chain() + [declare("fake_item", "c", size=1, tags={"env": "dev"})]
        applied = apply_changes(registry, declarations)

        change_set = plan_changes(registry, declarations, applied.snapshot)

        assert not change_set.has_changes()
        assert sorted(change_set.unchanged) == ["fake_item.c", "fake_thing.a", "fake_thing.b"]

    def test_in_place_update(self, registry):
        """Test that a mutable attribute change plans an update."""
        snapshot = apply_changes(registry, [declare("fake_item", "c", size=1)]).snapshot

        change_set = plan_changes(registry, [declare("fake_item", "c", size=2)], snapshot)

        [entry] = change_set.entries
        assert entry.key == "update:fake_item.c"
        assert entry.changed == ["size"]
        assert entry.prior.attributes == {"size": 1}
        assert entry.to_dict()["before"] == {"size": 1}
        assert entry.to_dict()["after"] == {"size": 2}

    def test_removed_attribute_is_a_change(self, registry):
        """Test that dropping an attribute is detected."""
        snapshot = apply_changes(registry, [declare("fake_item", "c", size=1, colour="red")]).snapshot

        change_set = plan_changes(registry, [declare("fake_item", "c", size=1)], snapshot)

        assert change_set.get("update:fake_item.c").changed == ["colour"]

    @pytest.mark.parametrize("before, after", [
        (1, True),
        (0, False),
        (1, 1.0),
        ({"port": 80}, {"port": 80.0}),
        ([1, 2], [True, 2]),
    ])
    def test_type_change_is_a_change(self, registry, before, after):
        """Test that values equal under == but of another type plan an update."""
        snapshot = apply_changes(registry, [declare("fake_item", "c", enabled=before)]).snapshot

        change_set = plan_changes(registry, [declare("fake_item", "c", enabled=after)], snapshot)

        assert keys(change_set) == ["update:fake_item.c"]
        assert change_set.get("update:fake_item.c").changed == ["enabled"]

    def test_ignore_changes(self, registry):
        """Test that ignored attributes are kept at their recorded value."""
        snapshot = apply_changes(registry, [declare("fake_item", "c", size=1)]).snapshot

        change_set = plan_changes(
            registry,
            [declare("fake_item", "c", lifecycle={"ignore_changes": ["size"]}, size=5)],
            snapshot,
        )

        assert not change_set.has_changes()

    def test_update_keeps_id_known(self, registry):
        """Test that an in-place update does not make its id unknown."""
        declarations = [
            declare("fake_thing", "a", zone="us-1", size=1),
            declare("fake_thing", "b", zone="us-1", parent="${fake_thing.a.id}"),
        ]
        snapshot = apply_changes(registry, declarations).snapshot

        declarations[0] = declare("fake_thing", "a", zone="us-1", size=2)
        change_set = plan_changes(registry, declarations, snapshot)

        assert keys(change_set) == ["update:fake_thing.a"]
        assert change_set.unchanged == ["fake_thing.b"]

    def test_update_makes_other_computed_values_unknown(self, registry):
        """Test that a reference to a non-id computed value of an updated resource changes."""
        declarations = [
            declare("fake_thing", "a", zone="us-1", size=1),
            declare("fake_item", "b", parent="${fake_thing.a.arn}"),
        ]
        snapshot = apply_changes(registry, declarations).snapshot

        declarations[0] = declare("fake_thing", "a", zone="us-1", size=2)
        change_set = plan_changes(registry, declarations, snapshot)

        assert keys(change_set) == ["update:fake_thing.a", "update:fake_item.b"]
        assert change_set.get("update:fake_item.b").predecessors == ["update:fake_thing.a"]

    def test_dependency_only_change(self, registry):
        """Test that adding depends_on alone records new dependencies without an entry."""
        snapshot = apply_changes(registry, [declare("fake_item", "a"), declare("fake_item", "b")]).snapshot

        change_set = plan_changes(
            registry,
            [declare("fake_item", "a"), declare("fake_item", "b", depends_on=["fake_item.a"])],
            snapshot,
        )

        assert not change_set.has_changes()
        assert change_set.dependency_updates == {"fake_item.b": ["fake_item.a"]}


class TestReplacement:
    """Test replacement ordering."""

    def test_destroy_then_create(self, registry):
        """Test that an immutable change deletes before creating by default."""
        snapshot = apply_changes(registry, chain()).snapshot
        declarations = chain()
        declarations[0] = declare("fake_thing", "a", zone="eu-1")

        change_set = plan_changes(registry, declarations, snapshot)

        assert keys(change_set) == [
            "delete:fake_thing.a",
            "create:fake_thing.a",
            "update:fake_thing.b",
        ]
        delete = change_set.get("delete:fake_thing.a")
        assert delete.replace and not delete.create_before_destroy
        assert "zone" in delete.reason
        assert change_set.get("update:fake_thing.b").planned["parent"] is UNKNOWN
        assert change_set.summary()["replace"] == 1
        assert change_set.summary()["update"] == 1
        assert_consistent(change_set)

    def test_create_before_destroy(self, registry):
        """Test that dependents move to the new object before the old one is deleted."""
        snapshot = apply_changes(registry, chain(create_before_destroy=True)).snapshot
        declarations = [
            declare("fake_thing", "a", lifecycle={"create_before_destroy": True}, zone="eu-1"),
            chain()[1],
        ]

        change_set = plan_changes(registry, declarations, snapshot)

        assert keys(change_set) == [
            "create:fake_thing.a",
            "update:fake_thing.b",
            "delete:fake_thing.a",
        ]
        assert set(change_set.get("delete:fake_thing.a").predecessors) == {
            "create:fake_thing.a", "update:fake_thing.b"
        }
        assert_consistent(change_set)

    def test_unknown_immutable_value_forces_replacement(self, registry):
        """Test that an immutable attribute fed by a replaced resource is replaced too."""
        declarations = [
            declare("fake_thing", "a", zone="us-1"),
            declare("fake_thing", "b", zone="${fake_thing.a.arn}"),
        ]
        snapshot = apply_changes(registry, declarations).snapshot
        declarations[0] = declare("fake_thing", "a", zone="eu-1")

        change_set = plan_changes(registry, declarations, snapshot)

        assert keys(change_set) == [
            "delete:fake_thing.b",
            "delete:fake_thing.a",
            "create:fake_thing.a",
            "create:fake_thing.b",
        ]
        assert change_set.summary()["replace"] == 2

    def test_create_before_destroy_propagates_to_dependencies(self, registry):
        """Test that a create-before-destroy dependent forces the same on replaced dependencies."""
        declarations = [
            declare("fake_thing", "a", zone="us-1"),
            declare("fake_thing", "b", lifecycle={"create_before_destroy": True}, zone="${fake_thing.a.arn}"),
        ]
        snapshot = apply_changes(registry, declarations).snapshot
        declarations[0] = declare("fake_thing", "a", zone="eu-1")

        change_set = plan_changes(registry, declarations, snapshot)

        assert change_set.get("delete:fake_thing.a").create_before_destroy
        assert keys(change_set)[:2] == ["create:fake_thing.a", "create:fake_thing.b"]
        assert_consistent(change_set)

    def test_prevent_destroy_blocks_replacement(self, registry):
        """Test that a protected resource cannot be replaced."""
        snapshot = apply_changes(registry, [declare("fake_thing", "a", zone="us-1")]).snapshot

        with pytest.raises(PlanError) as exc_info:
            plan_changes(
                registry,
                [declare("fake_thing", "a", lifecycle={"prevent_destroy": True}, zone="eu-1")],
                snapshot,
            )

        assert "prevent_destroy" in exc_info.value.message
        assert exc_info.value.context.address == "fake_thing.a"


class TestDeletion:
    """Test planning deletions."""

    def test_removed_resources_deleted_dependents_first(self, registry):
        """Test that undeclared resources are deleted in reverse dependency order."""
        snapshot = apply_changes(registry, chain()).snapshot

        change_set = plan_changes(registry, [], snapshot)

        assert keys(change_set) == ["delete:fake_thing.b", "delete:fake_thing.a"]
        assert change_set.get("delete:fake_thing.b").reason == "no longer declared"
        assert_consistent(change_set)

    def test_removed_dependency_deleted_after_dependent_moves(self, registry):
        """Test that a dropped dependency is deleted after its former dependent is updated."""
        snapshot = apply_changes(registry, [
            declare("fake_item", "old"),
            declare("fake_item", "app", parent="${fake_item.old.id}"),
        ]).snapshot

        change_set = plan_changes(registry, [declare("fake_item", "app", parent="static")], snapshot)

        assert keys(change_set) == ["update:fake_item.app", "delete:fake_item.old"]

    def test_destroy_mode(self, registry, snapshot):
        """Test that destroy deletes everything in reverse order."""
        declarations = chain() + [declare("fake_item", "c")]
        snapshot = apply_changes(registry, declarations).snapshot

        change_set = plan_changes(registry, declarations, snapshot, destroy=True)

        assert change_set.destroy
        assert keys(change_set) == [
            "delete:fake_thing.b", "delete:fake_thing.a", "delete:fake_item.c"
        ]
        assert change_set.summary()["delete"] == 3

    def test_destroy_without_declarations(self, registry):
        """Test that destroy works from the snapshot alone."""
        snapshot = apply_changes(registry, chain()).snapshot

        change_set = Planner().plan(None, snapshot, destroy=True)

        assert keys(change_set) == ["delete:fake_thing.b", "delete:fake_thing.a"]

    def test_graph_required_unless_destroying(self, snapshot):
        """Test that a normal plan needs declarations."""
        with pytest.raises(PlanError):
            Planner().plan(None, snapshot)

    def test_destroy_respects_prevent_destroy(self, registry):
        """Test that destroying a protected resource is refused."""
        declarations = [declare("fake_item", "keep", lifecycle={"prevent_destroy": True})]
        snapshot = apply_changes(registry, declarations).snapshot

        with pytest.raises(PlanError):
            plan_changes(registry, declarations, snapshot, destroy=True)

    def test_deposed_object_deleted(self, registry):
        """Test that a leftover deposed object is planned for deletion."""
        snapshot = apply_changes(registry, [declare("fake_item", "a")]).snapshot
        old = ResourceState(type="fake_item", name="a", outputs={"id": "old-1"})
        snapshot.deposed.append(DeposedObject(key="abc123", resource=old))

        change_set = plan_changes(registry, [declare("fake_item", "a")], snapshot)

        [entry] = change_set.entries
        assert entry.key == "delete:fake_item.a#abc123"
        assert entry.deposed and entry.deposed_key == "abc123"
        assert entry.prior.id == "old-1"
        assert change_set.unchanged == ["fake_item.a"]


class TestTargets:
    """Test targeted plans."""

    def test_target_includes_dependencies(self, registry, snapshot):
        """Test that a target pulls in what it depends on and nothing else."""
        change_set = plan_changes(
            registry, chain() + [declare("fake_item", "c")], snapshot, targets=["fake_thing.b"]
        )

        assert keys(change_set) == ["create:fake_thing.a", "create:fake_thing.b"]
        assert change_set.targets == ["fake_thing.b"]

    def test_destroy_target_includes_dependents(self, registry):
        """Test that destroying a target also destroys what depends on it."""
        declarations = chain() + [declare("fake_item", "c")]
        snapshot = apply_changes(registry, declarations).snapshot

        change_set = plan_changes(
            registry, declarations, snapshot, targets=["fake_thing.a"], destroy=True
        )

        assert keys(change_set) == ["delete:fake_thing.b", "delete:fake_thing.a"]
        assert change_set.unchanged == ["fake_item.c"]

    def test_unknown_target(self, registry, snapshot):
        """Test that a target must exist."""
        with pytest.raises(PlanError) as exc_info:
            plan_changes(registry, chain(), snapshot, targets=["fake_item.nope"])

        assert "fake_item.nope" in exc_info.value.message


class TestStateGraph:
    """Test ordering that relies on recorded dependencies."""

    def test_recorded_dependencies_order_deletes(self, registry):
        """Test that deletes follow recorded dependencies even for unknown types."""
        snapshot = StateSnapshot(state_id="test")
        snapshot.set_resource(ResourceState(type="fake_item", name="base", outputs={"id": "1"}))
        snapshot.set_resource(ResourceState(
            type="fake_item", name="top", outputs={"id": "2"}, dependencies=["fake_item.base"]
        ))

        change_set = Planner().plan(make_graph(registry, []), snapshot)

        assert keys(change_set) == ["delete:fake_item.top", "delete:fake_item.base"]
        assert change_set.get("delete:fake_item.base").action == ChangeAction.DELETE
