"""Infrastructure layer: configuration, settings, PHI encryption, request context and logging."""
