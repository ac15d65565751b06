"""
Pytest configuration and shared fixtures for Klip integration tests.
"""

import sys
from pathlib import Path

# Add the repository root to path for production code imports
sys.path.insert(0, str(Path(__file__).parent.parent.parent))
# Add tests/integration to path for fixtures imports
sys.path.insert(0, str(Path(__file__).parent))
