"""Customer provisioning queue service."""
