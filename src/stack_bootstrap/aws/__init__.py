"""AWS integration: sessions, credentials, stack status and deployment."""
