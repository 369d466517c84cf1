"""Shared test helpers for the epicswarm test suite."""

from __future__ import annotations

from tests.helpers.builders import child, fast_config, make_scheduler

__all__ = ["child", "fast_config", "make_scheduler"]
