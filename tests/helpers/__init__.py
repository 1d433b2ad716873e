from .fakes import FakeClient, FakeDetailParser, FakeParser, FakeStore

__all__ = ["FakeClient", "FakeDetailParser", "FakeParser", "FakeStore"]
