"""Test utilities for pushdeploy tests."""

from .fakes import FakeHost, FakeTransport, Rule
from .helpers import build_definition, make_payload

__all__ = ["FakeHost", "FakeTransport", "Rule", "build_definition", "make_payload"]
