"""
Tile Classifier – MobileNetV3-Small on grayscale board tiles
=============================================================

Architectural decisions:
  • Same MobileNetV3-Small backbone family as a regular image classifier,
    but the stem convolution takes **one** channel: tiles arrive as
    overlay-cleaned luminance, so colour carries no extra signal.
  • Input is a batch of ``(N, 1, T, T)`` tiles (T = 32 by default); the
    network is always run on all 64 tiles of a board at once.
  • The head is a lightweight MLP
    (dropout → 256-d → ReLU → dropout → 13 logits).
  • ``forward`` returns raw logits; confidence estimation happens in
    ``chess_stream.inference.square_classifier``.

Training the network is out of scope for this package; weights are loaded
from a checkpoint produced elsewhere.
"""

from __future__ import annotations

from typing import Optional

import torch
import torch.nn as nn
from torchvision import models


# ── Canonical class list (index ↔ label mapping) ──────────────────────

CLASS_NAMES: list[str] = [
    "empty",
    "white_pawn",
    "white_knight",
    "white_bishop",
    "white_rook",
    "white_queen",
    "white_king",
    "black_pawn",
    "black_knight",
    "black_bishop",
    "black_rook",
    "black_queen",
    "black_king",
]

NUM_CLASSES: int = len(CLASS_NAMES)

# Label used for an empty square in 64-element piece lists
EMPTY: str = "1"

# Class label → FEN character
CLASS_TO_FEN: dict[str, str] = {
    "empty": EMPTY,
    "white_pawn": "P",
    "white_knight": "N",
    "white_bishop": "B",
    "white_rook": "R",
    "white_queen": "Q",
    "white_king": "K",
    "black_pawn": "p",
    "black_knight": "n",
    "black_bishop": "b",
    "black_rook": "r",
    "black_queen": "q",
    "black_king": "k",
}

# Model output index → square label
PIECE_LABELS: list[str] = [CLASS_TO_FEN[name] for name in CLASS_NAMES]


# ── Model ──────────────────────────────────────────────────────────────

class TileClassifierNet(nn.Module):
    """MobileNetV3-Small with a 1-channel stem and a 13-class head.

    Parameters
    ----------
    num_classes : int
        Number of output classes (default 13).
    dropout : float
        Dropout probability used in the classifier head.
    """

    def __init__(
        self,
        num_classes: int = NUM_CLASSES,
        dropout: float = 0.3,
    ) -> None:
        super().__init__()

        self.backbone = models.mobilenet_v3_small(weights=None)

        # Grayscale stem: Conv2d(3, 16, 3, stride=2) → Conv2d(1, 16, 3, stride=2)
        stem: nn.Conv2d = self.backbone.features[0][0]
        self.backbone.features[0][0] = nn.Conv2d(
            1,
            stem.out_channels,
            kernel_size=stem.kernel_size,
            stride=stem.stride,
            padding=stem.padding,
            bias=False,
        )

        in_features: int = self.backbone.classifier[0].in_features
        self.backbone.classifier = nn.Sequential(
            nn.Dropout(p=dropout),
            nn.Linear(in_features, 256),
            nn.ReLU(inplace=True),
            nn.Dropout(p=dropout),
            nn.Linear(256, num_classes),
        )

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        """Return **logits** of shape ``(B, num_classes)``."""
        return self.backbone(x)

    def predict_proba(self, x: torch.Tensor) -> torch.Tensor:
        """Return softmax probabilities of shape ``(B, num_classes)``."""
        with torch.no_grad():
            logits = self.forward(x)
            return torch.softmax(logits, dim=1)

    @classmethod
    def load_from_checkpoint(
        cls,
        path: str,
        device: Optional[torch.device] = None,
        **kwargs,
    ) -> "TileClassifierNet":
        """Convenience loader that handles map_location automatically."""
        if device is None:
            device = torch.device("cuda" if torch.cuda.is_available() else "cpu")
        model = cls(**kwargs)
        state = torch.load(path, map_location=device, weights_only=True)
        model.load_state_dict(state)
        model.to(device)
        model.eval()
        return model
