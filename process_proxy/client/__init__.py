"""Client-side consumers of the process proxy."""

from .controller import ClientCacheController, PreviewStatus, UiState

__all__ = ["ClientCacheController", "PreviewStatus", "UiState"]
