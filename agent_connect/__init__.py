"""agent-connect: OAuth connections and credential injection for automated agents."""

__version__ = "0.1.0"
