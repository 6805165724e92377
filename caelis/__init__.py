"""Agent runtime kernel: session stores, policy hooks, plugin registry, prompt assembly, skills discovery, history compaction and the run orchestrator."""

__version__ = "0.1.0"