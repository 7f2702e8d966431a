"""Clients for the WhatsApp bridge sidecar."""
