"""Default content capabilities: local extractors, prompts, AI transforms."""
