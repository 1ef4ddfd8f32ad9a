"""Route LLM tasks to worker nodes through a balancing HTTP gateway."""

__version__ = "0.1.0"