"""
Common building blocks for the class journal sync stack.

Modules:
- errors: exception taxonomy shared by storage, remote clients and the engine
- encryption: passphrase-based Fernet codec for the Document blob
"""

__all__ = [
    "errors",
    "encryption",
]
