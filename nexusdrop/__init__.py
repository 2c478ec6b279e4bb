"""NexusDrop: resumable HTTP and peer-swarm download service."""

__version__ = "1.0.0"
