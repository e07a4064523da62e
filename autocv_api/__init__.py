"""AutoCV API - streaming resume analysis with cancellable refinement passes."""

__version__ = "0.3.0"
