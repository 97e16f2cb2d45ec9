"""
Local test-cluster synthesizer and orchestrator for a mixnet deployment.

Phases implemented:
- Identity generation
- Config synthesis and trust wiring (authority mesh, node whitelist)
- Concurrent launch with per-instance log tailing and ordered shutdown
- Out-of-band account provisioning over the provider management socket
"""

__all__ = ["config", "crypto", "management", "orchestrator", "synthesis", "topology", "utils", "errors"]
