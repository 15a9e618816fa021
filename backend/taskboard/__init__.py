"""Broker task board backend: stage pipeline, tasks, history and realtime sync."""
