"""UMPSA community platform: moderation & publishing workflow service."""
