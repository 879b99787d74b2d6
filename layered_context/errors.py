"""Exceptions raised by the layered context engine."""


class LayeredContextError(Exception):
    """Base class for layered context failures."""


class SummarizerError(LayeredContextError):
    """A chunk could not be summarized; the chunk stays unarchived."""


class DenseScoreError(LayeredContextError):
    """A strict dense score provider failed or timed out."""


class ConfigurationError(LayeredContextError):
    """Invalid layered context configuration or override."""
