"""
proton-gate: gate SSH key use and git signing behind a fresh vault unlock.

Components:
- Socket Locator / Agent Supervisor (``proton_gate.agent``)
- Session Gatekeeper (``proton_gate.session``)
- Command Interceptor (``proton_gate.interceptor``)
- Status Reporter (``proton_gate.status``)
"""

__version__ = "0.1.0"
