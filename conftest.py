"""
Pytest configuration file.
Automatically adds the project root to sys.path for imports.
"""
import sys
from pathlib import Path

# Add project root to sys.path if not already present
project_root = Path(__file__).parent.resolve()
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))
