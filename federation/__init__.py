"""
Remote runtime: script host, container loading, module resolution, retry/state machine.

Import from the submodules directly (federation.runtime, federation.loader, ...);
this package module stays import-free so sdk.discovery can depend on federation.errors.
"""
