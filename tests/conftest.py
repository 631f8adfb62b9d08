"""Pytest configuration: adds the repository root to sys.path for test discovery."""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
