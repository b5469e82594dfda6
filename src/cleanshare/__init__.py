"""CleanShare

Local detection and redaction of sensitive content (emails, card numbers,
government ids, secrets, faces and barcodes) in images and PDFs. See
``cleanshare.core`` for the composable pipeline APIs and ``cleanshare.cli``
for the command-line entrypoint.
"""

__all__ = [
    "core",
    "models",
    "errors",
    "validators",
    "presets",
    "storage",
    "history",
    "ocr",
    "regions",
    "redact",
    "audit",
    "batch",
    "logging",
    "settings",
]

__version__ = "0.1.0"
