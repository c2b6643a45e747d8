"""QR Vault - QR code generation, scanning and storage API."""
