"""azfleet - Azure VM fleet provisioning and user management CLI

Philosophy:
- Ruthless simplicity
- Brick architecture (self-contained modules)
- Sequential, best-effort batches with honest failure accounting
- Fail fast on bad configuration

azfleet provisions a batch of Azure VMs across regions, configures sudo-capable
user accounts on them over SSH, and audits per-user login activity.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
