"""File Simulator dynamic server orchestrator."""
