"""
Root entry point – delegates to the chess_stream package.

Usage:
    python chess_stream.py recognize --image board.png
    python chess_stream.py watch     --video stream.mp4 --interval 1.5
"""

from chess_stream.main import main

if __name__ == "__main__":
    main()
