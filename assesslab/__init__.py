"""AssessLab paper evaluation service."""
