"""
Chess Stream
============

Continuously turns video frames into chess positions (FEN strings).

Architecture:
    1. Board Location    – edge-density heuristic, cached between refreshes
    2. Square Tiling     – overlay-safe grayscale, 8×8 grid of 32×32 tiles
    3. Classification    – MobileNetV3-Small on 13 classes, or an
                           occupancy heuristic when no model is available
    4. Smoothing         – low-confidence squares keep their last label
    5. Change Tracking   – no-change / move / new-game
"""

__version__ = "1.0.0"
