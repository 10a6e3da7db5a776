"""Skill library bulk answering service."""
