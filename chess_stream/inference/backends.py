"""
Inference Backends
==================

The square classifier talks to its model through a tiny capability:

    run(batch)  – ``(64, 1, T, T)`` float32 tiles → ``(64, 13)`` scores
    close()     – release whatever the backend holds

``TorchModelBackend`` is the production implementation; tests and other
runtimes can supply any object with the same two methods.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Protocol

import numpy as np
import torch

from chess_stream.models.classifier import NUM_CLASSES, TileClassifierNet

log = logging.getLogger(__name__)

DEFAULT_MODEL_PATH = Path("models") / "tile_classifier.pt"


class ModelOutputError(ValueError):
    """The model produced scores of an unexpected shape."""


class InferenceBackend(Protocol):
    def run(self, batch: np.ndarray) -> np.ndarray: ...

    def close(self) -> None: ...


class TorchModelBackend:
    """Run a ``torch.nn.Module`` on batches of board tiles.

    Parameters
    ----------
    model : torch.nn.Module
        Maps ``(N, 1, T, T)`` tensors to ``(N, 13)`` logits.
    device : str
        ``"cpu"`` or ``"cuda"``.
    use_tta : bool
        Average logits with a horizontally flipped copy of the batch.
    """

    def __init__(
        self,
        model: torch.nn.Module,
        device: str = "cpu",
        use_tta: bool = False,
    ) -> None:
        self.device = torch.device(device)
        self.model: Optional[torch.nn.Module] = model.to(self.device).eval()
        self.use_tta = use_tta

    @torch.no_grad()
    def run(self, batch: np.ndarray) -> np.ndarray:
        if self.model is None:
            raise RuntimeError("Backend has been closed")

        x = torch.from_numpy(np.ascontiguousarray(batch, dtype=np.float32)).to(self.device)
        logits = self.model(x)

        if self.use_tta:
            logits = (logits + self.model(torch.flip(x, dims=[3]))) / 2.0

        scores = logits.detach().cpu().numpy()
        if scores.shape != (batch.shape[0], NUM_CLASSES):
            raise ModelOutputError(
                f"Expected scores of shape ({batch.shape[0]}, {NUM_CLASSES}), "
                f"got {tuple(scores.shape)}"
            )
        return scores

    def close(self) -> None:
        self.model = None
        if self.device.type == "cuda":
            torch.cuda.empty_cache()


def load_backend(
    model_path: Optional[str | Path] = None,
    device: str = "cpu",
    use_tta: bool = False,
) -> Optional[TorchModelBackend]:
    """Load a ``TileClassifierNet`` checkpoint, or ``None`` if there is none."""
    path = Path(model_path) if model_path else DEFAULT_MODEL_PATH
    if not path.is_file():
        log.warning("No tile classifier at %s, using occupancy heuristic", path)
        return None

    model = TileClassifierNet.load_from_checkpoint(
        str(path), device=torch.device(device),
    )
    log.info("Tile classifier loaded  path=%s  device=%s  tta=%s", path, device, use_tta)
    return TorchModelBackend(model, device=device, use_tta=use_tta)
