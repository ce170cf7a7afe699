"""Kafka-driven worker that provisions databases with ansible-playbook."""

__version__ = "0.1.0"
