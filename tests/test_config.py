"""Tests for jax_fte.config module."""

from __future__ import annotations

import pytest

from jax_fte import config


class TestBoolEnv:
    """Tests for bool_env."""

    @pytest.mark.parametrize("value", ["1", "true", "Yes", "on", "T"])
    def test_true_values(self, monkeypatch, value):
        monkeypatch.setenv("JAX_FTE_TEST_FLAG", value)
        assert config.bool_env("JAX_FTE_TEST_FLAG", False) is True

    @pytest.mark.parametrize("value", ["0", "false", "No", "off", "f"])
    def test_false_values(self, monkeypatch, value):
        monkeypatch.setenv("JAX_FTE_TEST_FLAG", value)
        assert config.bool_env("JAX_FTE_TEST_FLAG", True) is False

    def test_default(self, monkeypatch):
        monkeypatch.delenv("JAX_FTE_TEST_FLAG", raising=False)
        assert config.bool_env("JAX_FTE_TEST_FLAG", True) is True

    def test_invalid(self, monkeypatch):
        monkeypatch.setenv("JAX_FTE_TEST_FLAG", "maybe")
        with pytest.raises(ValueError, match="invalid truth value"):
            config.bool_env("JAX_FTE_TEST_FLAG", False)


class TestCompileSwitch:
    """Tests for enable_compile and disable_compile."""

    def test_toggle(self):
        initial = config.compile_enabled()
        try:
            config.disable_compile()
            assert config.compile_enabled() is False
            config.enable_compile()
            assert config.compile_enabled() is True
        finally:
            if initial:
                config.enable_compile()
            else:
                config.disable_compile()

    def test_env_variable_name(self):
        assert config.DISABLE_COMPILE_ENV == "JAX_FTE_DISABLE_COMPILE"
