"""Recovery, heartbeat monitoring and task scheduling engine."""
