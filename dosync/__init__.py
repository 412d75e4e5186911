"""DOSync: keeps a Docker Compose deployment in line with its registries.

Runnable, single-host reconciler that:
 - discovers published image tags per service
 - selects a tag with a declarative image policy
 - rolls replicas forward with health-gated rollback
 - rewrites the compose file and records deployment metrics
"""

__version__ = "0.4.0"
