"""swarmlab - declarative Docker Swarm fleet deployment

Philosophy:
- Ruthless simplicity
- Brick architecture (self-contained modules)
- Idempotent operations (re-running converges, never duplicates)
- Fail fast on bad configuration, isolate failures at runtime

swarmlab resolves service startup order, converges swarm membership and node
labels to a declared roster, and rolls out stacks with bounded retries,
failure diagnosis and post-deploy health verification.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
