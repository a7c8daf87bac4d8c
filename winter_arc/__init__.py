"""Winter Arc: a two-player habit battle with a nightly settlement engine."""

__version__ = "0.1.0"
