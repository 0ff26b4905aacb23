"""Unit tests for research_graph.nodes.selector - diversity-aware selection."""

from __future__ import annotations

import random

import pytest

from research_graph.exceptions import NoDiverseSourcesError
from research_graph.nodes.selector import hostname, select_diverse
from research_graph.state import SearchResult


def _result(rid: str, url: str, score: float) -> SearchResult:
    return SearchResult(id=rid, url=url, title=rid, score=score)


class TestHostname:
    def test_lowercases(self) -> None:
        assert hostname("https://News.Example.org:8443/a?b=c") == "news.example.org"

    def test_no_host(self) -> None:
        assert hostname("not a url") == ""


class TestSelectDiverse:
    """Greedy single-pass selection by score with unique hostnames."""

    def test_same_host_cluster(self) -> None:
        results = [
            _result("s1", "https://same.org/1", 0.95),
            _result("s2", "https://same.org/2", 0.93),
            _result("s3", "https://same.org/3", 0.91),
            _result("d1", "https://one.org/x", 0.8),
            _result("d2", "https://two.org/y", 0.7),
        ]
        selected = select_diverse(results, max_selected=3, min_score=0.5)
        assert [r.id for r in selected] == ["s1", "d1", "d2"]

    def test_threshold_is_strict(self) -> None:
        results = [
            _result("a", "https://a.org", 0.9),
            _result("b", "https://b.org", 0.5),
        ]
        assert [r.id for r in select_diverse(results)] == ["a"]

    def test_respects_k(self) -> None:
        results = [_result(f"r{i}", f"https://host{i}.org", 0.9) for i in range(6)]
        assert len(select_diverse(results, max_selected=2)) == 2

    def test_ties_keep_incoming_order(self) -> None:
        results = [
            _result("first", "https://a.org", 0.8),
            _result("second", "https://b.org", 0.8),
            _result("third", "https://c.org", 0.8),
        ]
        assert [r.id for r in select_diverse(results, max_selected=2)] == ["first", "second"]

    def test_sorts_unsorted_input(self) -> None:
        results = [
            _result("low", "https://a.org", 0.6),
            _result("high", "https://b.org", 0.9),
        ]
        assert [r.id for r in select_diverse(results)] == ["high", "low"]

    def test_nothing_qualifies(self) -> None:
        results = [_result("a", "https://a.org", 0.5), _result("b", "https://b.org", 0.1)]
        with pytest.raises(NoDiverseSourcesError, match="diverse"):
            select_diverse(results)

    def test_empty_input(self) -> None:
        with pytest.raises(NoDiverseSourcesError):
            select_diverse([])

    def test_invariants_hold_for_random_inputs(self) -> None:
        rng = random.Random(1234)
        hosts = ["a.org", "b.org", "c.org", "d.org"]
        for _ in range(200):
            results = [
                _result(f"r{i}", f"https://{rng.choice(hosts)}/{i}", round(rng.random(), 2))
                for i in range(rng.randint(1, 10))
            ]
            k = rng.randint(1, 4)
            try:
                selected = select_diverse(results, max_selected=k, min_score=0.5)
            except NoDiverseSourcesError:
                assert all(r.score <= 0.5 for r in results)
                continue
            assert len(selected) <= k
            assert len({hostname(r.url) for r in selected}) == len(selected)
            assert all(r.score > 0.5 for r in selected)
            scores = [r.score for r in selected]
            assert scores == sorted(scores, reverse=True)
