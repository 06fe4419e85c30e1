"""
Tests for the query-scoped tag sea.
"""

import math

import numpy as np
import pytest

from helpers import axis, make_aku
from knowledge.search.tag_sea import TagSea
from knowledge.vector_store.tag_pool import ModelTagPool


@pytest.fixture
def pool():
    pool = ModelTagPool("m")
    pool.sync_vectors([("rust", axis(0)), ("go", axis(1)), ("lang", axis(2))])
    return pool


@pytest.fixture
def akus():
    return [
        make_aku("Rust", "Rust is fast", tags=[("rust", 0.9), ("lang", 0.5)]),
        make_aku("Go", "Go is simple", tags=[("go", 0.8), ("lang", 0.7)]),
        make_aku("Misc", "Other", tags=[("lang", 0.2)]),
    ]


class TestTagSea:
    """Tag usage, entropy weights, and lens centers."""

    def test_tag_to_akus_and_syntax_weights(self, pool, akus):
        sea = TagSea.build(akus, pool)
        assert sea.akus_for("rust") == [(akus[0].id, 0.9)]
        assert len(sea.akus_for("lang")) == 3
        assert sea.syntax_weights["lang"] == 0.7
        assert sea.akus_for("unknown") == []

    def test_entropy_formula(self, pool, akus):
        sea = TagSea.build(akus, pool)
        assert sea.entropy("rust") == pytest.approx(math.log(3 / 2) + 1)
        assert sea.entropy("lang") == pytest.approx(math.log(3 / 4) + 1)
        assert sea.entropy("never-seen") == 1.0

    def test_rare_tags_weigh_more_than_common_ones(self, pool, akus):
        sea = TagSea.build(akus, pool)
        assert sea.entropy("rust") > sea.entropy("lang")

    def test_single_tag_lens_center_is_its_unit_vector(self, pool, akus):
        sea = TagSea.build(akus, pool)
        np.testing.assert_allclose(sea.compute_lens_center(["go"]), axis(1), atol=1e-6)

    def test_lens_center_is_weighted_and_normalized(self, pool, akus):
        sea = TagSea.build(akus, pool)
        center = sea.compute_lens_center(["rust", "go"])
        assert np.linalg.norm(center) == pytest.approx(1.0, abs=1e-6)
        # rust: 0.9 * (ln 1.5 + 1), go: 0.8 * (ln 1.5 + 1)
        assert center[0] / center[1] == pytest.approx(0.9 / 0.8, rel=1e-5)

    def test_lens_center_unknown_tags(self, pool, akus):
        sea = TagSea.build(akus, pool)
        assert sea.compute_lens_center(["nope"]) is None

    def test_lens_center_empty_pool(self, akus):
        sea = TagSea.build(akus, ModelTagPool("empty"))
        assert sea.compute_lens_center(["rust"]) is None
