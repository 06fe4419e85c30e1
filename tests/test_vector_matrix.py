"""
Tests for the per-collection vector matrix and its dimension invariant.
"""

import numpy as np
import pytest

from knowledge.vector_store.vector_matrix import VectorMatrix


def assert_invariant(matrix: VectorMatrix):
    assert matrix.data.size == len(matrix.ids) * matrix.dimension
    assert matrix.matrix.shape[0] == len(matrix.ids)


class TestVectorMatrix:
    """Insertion, overwrite, removal, and rebuild."""

    def test_first_vector_fixes_dimension(self):
        matrix = VectorMatrix()
        assert matrix.update_vector("a", [1.0, 0.0, 0.0])
        assert matrix.dimension == 3
        assert_invariant(matrix)

    def test_mismatched_dimension_is_dropped(self):
        matrix = VectorMatrix()
        matrix.update_vector("a", [1.0, 0.0, 0.0])
        assert not matrix.update_vector("b", [1.0, 0.0])
        assert matrix.ids == ["a"]
        assert_invariant(matrix)

    def test_overwrite_keeps_position(self):
        matrix = VectorMatrix()
        matrix.update_vector("a", [1.0, 0.0])
        matrix.update_vector("b", [0.0, 1.0])
        matrix.update_vector("a", [0.5, 0.5])
        assert matrix.ids == ["a", "b"]
        np.testing.assert_allclose(matrix.vector_for("a"), [0.5, 0.5])
        assert_invariant(matrix)

    def test_remove_shifts_tail(self):
        matrix = VectorMatrix()
        for i, aku_id in enumerate(["a", "b", "c"]):
            vector = [0.0, 0.0, 0.0]
            vector[i] = 1.0
            matrix.update_vector(aku_id, vector)

        assert matrix.remove_vector("a")
        assert matrix.ids == ["b", "c"]
        np.testing.assert_allclose(matrix.vector_for("c"), [0.0, 0.0, 1.0])
        np.testing.assert_allclose(matrix.get_vector(0), [0.0, 1.0, 0.0])
        assert not matrix.remove_vector("a")
        assert_invariant(matrix)

    def test_invariant_holds_across_mixed_operations(self):
        matrix = VectorMatrix()
        rng = np.random.default_rng(7)
        for step in range(40):
            aku_id = f"id-{rng.integers(0, 10)}"
            if step % 3 == 2:
                matrix.remove_vector(aku_id)
            else:
                size = 4 if step % 7 else 5
                matrix.update_vector(aku_id, rng.normal(size=size).tolist())
            assert_invariant(matrix)

    def test_rebuild_drops_mismatched_entries(self):
        matrix = VectorMatrix()
        kept = matrix.rebuild("m", 0, 12, [("a", [1.0, 0.0]), ("b", [1.0, 0.0, 0.0]), ("c", [0.0, 1.0])])
        assert kept == 2
        assert matrix.model_id == "m"
        assert matrix.dimension == 2
        assert matrix.total_tokens == 12
        assert matrix.ids == ["a", "c"]
        assert_invariant(matrix)

    def test_cosine_scores(self):
        matrix = VectorMatrix()
        matrix.update_vector("x", [2.0, 0.0])
        matrix.update_vector("y", [0.0, 3.0])
        matrix.update_vector("zero", [0.0, 0.0])
        scores = matrix.cosine_scores(np.array([1.0, 0.0]))
        assert scores[0] == pytest.approx(1.0)
        assert scores[1] == pytest.approx(0.0)
        assert scores[2] == 0.0

    def test_cosine_scores_clamp_opposite_rows(self):
        matrix = VectorMatrix()
        matrix.update_vector("away", [-1.0, 1.0])
        matrix.update_vector("near", [1.0, 0.1])
        scores = matrix.cosine_scores(np.array([1.0, 0.0]))
        assert scores[0] == 0.0
        assert 0.9 < scores[1] <= 1.0

    def test_get_vector_bounds(self):
        matrix = VectorMatrix()
        matrix.update_vector("a", [1.0])
        assert matrix.get_vector(1) is None
        assert matrix.get_vector(-1) is None

    def test_clear(self):
        matrix = VectorMatrix()
        matrix.rebuild("m", 2, 0, [("a", [1.0, 0.0])])
        matrix.clear()
        assert matrix.model_id == ""
        assert len(matrix) == 0
        assert matrix.dimension == 0
