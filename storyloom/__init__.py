"""
Storyloom - multi-model narrative turn orchestration with character drive lenses.
"""

__version__ = "0.1.0"
