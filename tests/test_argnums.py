"""Tests for jax_fte.autodiff.argnums module."""

from __future__ import annotations

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from jax_fte.autodiff import check_call_selection, resolve_argnums_argnames
from jax_fte.errors import InvalidArgumentError


class TestResolveArgnumsArgnames:
    """Tests for resolve_argnums_argnames."""

    def test_default_first_argument(self):
        assert resolve_argnums_argnames(None) == ((0,), frozenset())

    def test_default_empty_with_names(self):
        assert resolve_argnums_argnames(None, "w") == ((), frozenset({"w"}))

    def test_int_and_sequence(self):
        assert resolve_argnums_argnames(2)[0] == (2,)
        assert resolve_argnums_argnames([3, 1])[0] == (1, 3)

    def test_names_list(self):
        _, names = resolve_argnums_argnames(0, ["a", "b"])
        assert names == frozenset({"a", "b"})

    def test_nothing_selected(self):
        with pytest.raises(InvalidArgumentError, match="no argument"):
            resolve_argnums_argnames([])

    def test_negative_index(self):
        with pytest.raises(InvalidArgumentError, match="negative"):
            resolve_argnums_argnames([-1, 0])

    def test_duplicate_index(self):
        with pytest.raises(InvalidArgumentError, match="Duplicate"):
            resolve_argnums_argnames([1, 1])

    def test_tag_in_message(self):
        with pytest.raises(InvalidArgumentError, match=r"\[value_and_grad\]"):
            resolve_argnums_argnames([], tag="[value_and_grad]")

    def test_non_string_name(self):
        with pytest.raises(InvalidArgumentError):
            resolve_argnums_argnames(None, [1])

    @given(st.lists(st.integers(min_value=0, max_value=20), min_size=1, max_size=6, unique=True))
    @settings(max_examples=20)
    def test_sorted_unique(self, indices):
        resolved, _ = resolve_argnums_argnames(indices)
        assert list(resolved) == sorted(indices)


class TestCheckCallSelection:
    """Tests for check_call_selection."""

    def test_valid(self):
        check_call_selection((0, 1), frozenset({"k"}), (1, 2), {"k": 3})

    def test_index_past_arguments(self):
        with pytest.raises(InvalidArgumentError, match="only 1 positional"):
            check_call_selection((0, 1), frozenset(), (1,), {})

    def test_missing_keyword(self):
        with pytest.raises(InvalidArgumentError, match="'bias'"):
            check_call_selection((), frozenset({"bias"}), (), {"w": 1})
