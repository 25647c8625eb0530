"""Autonomous browser-agent run orchestrator."""
