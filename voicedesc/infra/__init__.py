"""Infrastructure layers: telemetry and the orchestration runtime."""
