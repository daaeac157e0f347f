"""Per-environment governance for sqlgate.

Layers, evaluated in order on every tool call:
- Tool access (deny list, then allow list)
- Readonly enforcement for mutating tools
- Database / schema scope
- Approval gate for non-metadata tools
"""
