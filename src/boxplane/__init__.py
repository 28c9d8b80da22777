"""boxplane: sandboxed compute box provisioning control plane."""
