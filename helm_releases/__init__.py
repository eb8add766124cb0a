"""Declarative orchestration of helm releases across release targets.

Releases, release targets and charts are declared in a release manifest. The
orchestrator selects releases for the active target with tag expressions,
orders them, resolves their per-target configuration and runs helm to install,
uninstall or test them.

```python
from helm_releases.helm import Helm
from helm_releases.manifest import read_manifest
from helm_releases.orchestrator import Orchestrator, OrchestratorConfig

manifest = await read_manifest(Path("releases.yaml"))
orchestrator = Orchestrator(manifest, Helm(), OrchestratorConfig(target="prod"))
results = await orchestrator.install()
```
"""

__all__ = [
    "manifest",
    "tags",
    "ordering",
    "resolver",
    "values",
    "decision",
    "helm",
    "exceptions",
    "orchestrator",
]
