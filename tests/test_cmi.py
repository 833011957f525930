"""
Tests for the central memory index: upsert, routing, resolution.
"""

import asyncio

import pytest

from federated_memory.core.errors import DimensionMismatchError
from federated_memory.core.schema import IndexPayload, RouteCandidate, RouteOptions

from conftest import COMPACT_DIM, FULL_DIM


def run(coro):
    return asyncio.run(coro)


def basis(*positions, dim=COMPACT_DIM):
    vector = [0.0] * dim
    for position in positions:
        vector[position] = 1.0
    return vector


def payload(title="entry", vector=None):
    return IndexPayload(title=title, summary=f"{title} summary", compact_embedding=vector or basis(0))


class TestUpsert:

    def test_upsert_is_idempotent(self, stack):
        run(stack.cmi.upsert_index("u1", "church", "r1", payload("first")))
        run(stack.cmi.upsert_index("u1", "church", "r1", payload("second", basis(1))))

        entries = run(stack.cmi.list_entries("u1"))

        assert len(entries) == 1
        assert entries[0].title == "second"
        assert entries[0].compact_embedding == basis(1)

    def test_upsert_accepts_dict_payload(self, stack):
        run(stack.cmi.upsert_index("u1", "church", "r1", {
            "title": "t", "summary": "s", "compact_embedding": basis(2), "keywords": ["k"],
        }))

        assert run(stack.cmi.get_entry("u1", "church", "r1")).keywords == ["k"]

    def test_wrong_compact_dimension_rejected(self, stack):
        with pytest.raises(DimensionMismatchError):
            run(stack.cmi.upsert_index("u1", "church", "r1", payload(vector=[1.0, 0.0])))

    def test_empty_compact_embedding_rejected(self):
        with pytest.raises(ValueError):
            IndexPayload(title="t", summary="s", compact_embedding=[])

    def test_remove(self, stack):
        run(stack.cmi.upsert_index("u1", "church", "r1", payload()))

        assert run(stack.cmi.remove_index("u1", "church", "r1")) is True
        assert run(stack.cmi.remove_index("u1", "church", "r1")) is False


class TestRoute:

    def test_route_never_crosses_owners(self, stack):
        run(stack.cmi.upsert_index("u1", "church", "mine", payload()))
        run(stack.cmi.upsert_index("u2", "church", "theirs", payload()))

        candidates = run(stack.cmi.route("u1", "anything at all"))

        assert [c.remote_memory_id for c in candidates] == ["mine"]

    def test_module_subset_limit_and_min_score(self, stack, provider):
        provider.vectors["query"] = basis(0, 1, 2, 3, dim=FULL_DIM)
        run(stack.cmi.upsert_index("u1", "church", "close", payload(vector=basis(0))))
        run(stack.cmi.upsert_index("u1", "technical", "also-close", payload(vector=basis(0))))
        run(stack.cmi.upsert_index("u1", "technical", "far", payload(vector=basis(8))))

        technical = run(stack.cmi.route("u1", "query", RouteOptions(module_ids=["technical"])))
        assert {c.module_id for c in technical} == {"technical"}

        floored = run(stack.cmi.route("u1", "query", RouteOptions(min_score=0.5)))
        assert {c.remote_memory_id for c in floored} == {"close", "also-close"}

        assert len(run(stack.cmi.route("u1", "query", RouteOptions(limit=1)))) == 1

    def test_ties_prefer_recent_access(self, stack):
        run(stack.cmi.upsert_index("u1", "church", "older", payload()))
        run(stack.cmi.upsert_index("u1", "church", "newer", payload()))

        candidates = run(stack.cmi.route("u1", "tie"))

        assert candidates[0].score == candidates[1].score
        assert [c.remote_memory_id for c in candidates] == ["newer", "older"]

    def test_route_results_sorted_descending(self, stack, provider):
        provider.vectors["query"] = basis(0, 1, 2, 3, dim=FULL_DIM)
        run(stack.cmi.upsert_index("u1", "church", "half", payload(vector=[0.7, 0.7] + [0.0] * (COMPACT_DIM - 2))))
        run(stack.cmi.upsert_index("u1", "church", "exact", payload(vector=basis(0))))
        run(stack.cmi.upsert_index("u1", "church", "none", payload(vector=basis(5))))

        candidates = run(stack.cmi.route("u1", "query"))

        assert [c.remote_memory_id for c in candidates] == ["exact", "half", "none"]


class TestResolve:

    def test_dangling_pointer_dropped_without_raising(self, stack):
        record = run(stack.church.store("u1", "Live record", {}))
        run(stack.cmi.upsert_index("u1", "church", "ghost", payload()))
        candidates = [
            RouteCandidate(module_id="church", remote_memory_id=record.id, score=0.9),
            RouteCandidate(module_id="church", remote_memory_id="ghost", score=0.8),
            RouteCandidate(module_id="finance", remote_memory_id="x", score=0.7),
        ]

        records = run(stack.cmi.resolve("u1", candidates))

        assert [r.id for r in records] == [record.id]
        assert records[0].module_id == "church"
        assert records[0].score == 0.9
        assert run(stack.cmi.get_entry("u1", "church", "ghost")) is not None

    def test_prune_dangling_removes_entry(self, stack):
        run(stack.cmi.upsert_index("u1", "church", "ghost", payload()))

        records = run(stack.cmi.resolve(
            "u1", [RouteCandidate(module_id="church", remote_memory_id="ghost", score=1.0)], prune_dangling=True))

        assert records == []
        assert run(stack.cmi.get_entry("u1", "church", "ghost")) is None

    def test_resolve_counts_access(self, stack):
        record = run(stack.church.store("u1", "Counted", {}))

        run(stack.cmi.resolve("u1", [RouteCandidate(module_id="church", remote_memory_id=record.id, score=1.0)]))

        assert run(stack.cmi.get_entry("u1", "church", record.id)).access_count == 1
        assert run(stack.church.get("u1", record.id)).access_count == 2

    def test_module_stats(self, stack):
        run(stack.church.store("u1", "one", {}))
        run(stack.church.store("u1", "two", {}))
        run(stack.technical.store("u1", "def three():\n    pass", {}))

        stats = run(stack.cmi.module_stats("u1"))

        assert stats == [
            {"module_id": "church", "memory_count": 2, "total_access": 0},
            {"module_id": "technical", "memory_count": 1, "total_access": 0},
        ]


def test_member_query_routes_to_person_before_donation(core, provider):
    """A query about a member must rank the person record above an unrelated donation."""
    person_text = "Person: John Doe, Status: member"
    donation_text = "Donation of $500"
    query_text = "find member named John"
    provider.vectors.update({
        person_text: basis(0, 1, 2, 3, dim=FULL_DIM),
        donation_text: basis(32, 33, 34, 35, dim=FULL_DIM),
        query_text: basis(0, 1, 2, 3, 4, 5, dim=FULL_DIM),
    })
    church = core.module("church")
    person = run(church.store("u1", person_text, {"type": "person", "firstName": "John", "lastName": "Doe"}))
    donation = run(church.store("u1", donation_text, {"type": "donation"}))

    candidates = run(core.cmi.route("u1", query_text))

    assert [c.remote_memory_id for c in candidates] == [person.id, donation.id]
    assert candidates[0].score > candidates[1].score

    records = run(core.cmi.search("u1", query_text))
    assert records[0].id == person.id
    assert records[0].module_id == "church"


class TestRouteModules:

    def test_keyword_match_or_high_similarity_selects_module(self, stack, provider):
        provider.vectors["choir schedule"] = basis(0, 1, 2, 3, dim=FULL_DIM)
        run(stack.cmi.upsert_index("u1", "church", "c1", IndexPayload(
            title="c1", summary="s", compact_embedding=basis(8), keywords=["baptism", "choir"])))
        run(stack.cmi.upsert_index("u1", "technical", "t1", IndexPayload(
            title="t1", summary="s", compact_embedding=basis(5), keywords=["python"])))
        run(stack.cmi.upsert_index("u1", "technical", "t2", payload(vector=basis(0))))

        routes = run(stack.cmi.route_modules("u1", "choir schedule"))

        assert [r.module_id for r in routes] == ["technical", "church"]
        assert routes[0].confidence == pytest.approx(1.0)
        assert routes[0].keywords == []
        assert routes[1].confidence == pytest.approx(0.0)
        assert routes[1].keywords == ["choir"]

    def test_limit_and_owner_isolation(self, stack, provider):
        provider.vectors["query"] = basis(0, 1, 2, 3, dim=FULL_DIM)
        run(stack.cmi.upsert_index("u1", "church", "a", payload(vector=basis(0))))
        run(stack.cmi.upsert_index("u1", "technical", "b", payload(vector=[0.8, 0.6] + [0.0] * (COMPACT_DIM - 2))))
        run(stack.cmi.upsert_index("u2", "church", "c", IndexPayload(
            title="c", summary="s", compact_embedding=basis(0), keywords=["query"])))

        assert [r.module_id for r in run(stack.cmi.route_modules("u1", "query", limit=1))] == ["church"]
        assert run(stack.cmi.route_modules("u3", "query")) == []

    def test_unrelated_query_selects_nothing(self, stack, provider):
        provider.vectors["query"] = basis(0, 1, 2, 3, dim=FULL_DIM)
        run(stack.cmi.upsert_index("u1", "church", "a", IndexPayload(
            title="a", summary="s", compact_embedding=basis(3), keywords=["hymn"])))

        assert run(stack.cmi.route_modules("u1", "query")) == []


class TestRelationships:

    @pytest.fixture
    def linked(self, stack):
        for module_id, memory_id in [("church", "p1"), ("church", "h1"), ("technical", "n1")]:
            run(stack.cmi.upsert_index("u1", module_id, memory_id, payload(memory_id)))
        run(stack.cmi.create_relationship("u1", ("church", "p1"), ("church", "h1"), "member_of", 0.9))
        run(stack.cmi.create_relationship("u1", ("technical", "n1"), ("church", "p1"), "mentions", 0.4,
                                          {"line": 3}))
        return stack

    def test_related_in_both_directions_strongest_first(self, linked):
        related = run(linked.cmi.get_related("u1", "church", "p1"))

        assert [(r.entry.module_id, r.entry.remote_memory_id) for r in related] == [
            ("church", "h1"), ("technical", "n1"),
        ]
        assert related[0].relationship.strength == 0.9
        assert related[1].relationship.metadata == {"line": 3}

    def test_type_filter_and_limit(self, linked):
        mentions = run(linked.cmi.get_related("u1", "church", "p1", relationship_types=["mentions"]))
        strongest = run(linked.cmi.get_related("u1", "church", "p1", limit=1))

        assert [r.entry.remote_memory_id for r in mentions] == ["n1"]
        assert [r.entry.remote_memory_id for r in strongest] == ["h1"]

    def test_other_owner_sees_nothing(self, linked):
        assert run(linked.cmi.get_related("u2", "church", "p1")) == []

    def test_removing_entry_removes_its_relationships(self, linked):
        run(linked.cmi.remove_index("u1", "church", "h1"))
        run(linked.cmi.upsert_index("u1", "church", "h1", payload("h1")))

        related = run(linked.cmi.get_related("u1", "church", "p1"))

        assert [r.entry.remote_memory_id for r in related] == ["n1"]

    def test_unindexed_endpoint_skipped(self, stack):
        run(stack.cmi.upsert_index("u1", "church", "p1", payload("p1")))
        run(stack.cmi.create_relationship("u1", ("church", "p1"), ("church", "missing"), "knows"))

        assert run(stack.cmi.get_related("u1", "church", "p1")) == []

    def test_module_delete_cascades(self, stack):
        first = run(stack.church.store("u1", "Person: Ann Lee", {}))
        second = run(stack.church.store("u1", "Person: Bob Lee", {}))
        run(stack.cmi.create_relationship("u1", ("church", first.id), ("church", second.id), "spouse", 1.0))

        run(stack.church.delete("u1", second.id))

        assert run(stack.cmi.get_related("u1", "church", first.id)) == []

    @pytest.mark.parametrize("relationship_type,strength", [("", 0.5), ("knows", 1.5), ("knows", -0.1)])
    def test_invalid_relationship_rejected(self, stack, relationship_type, strength):
        with pytest.raises(ValueError):
            run(stack.cmi.create_relationship("u1", ("church", "a"), ("church", "b"), relationship_type, strength))
