"""Infrastructure: configuration, settings and logging setup."""
