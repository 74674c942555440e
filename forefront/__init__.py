"""Forefront: multi-provider LLM orchestration service."""
