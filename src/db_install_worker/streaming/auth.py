"""librdkafka connection settings shared by every Kafka client."""

from __future__ import annotations

from typing import Any

from db_install_worker.config.models import KafkaAuthMechanism, KafkaConfig

_SASL_MECHANISMS = {
    KafkaAuthMechanism.SASL_PLAIN: "PLAIN",
    KafkaAuthMechanism.SASL_SCRAM_256: "SCRAM-SHA-256",
    KafkaAuthMechanism.SASL_SCRAM_512: "SCRAM-SHA-512",
}

# librdkafka key -> KafkaConfig attribute
_SSL_FILES = (
    ("ssl.ca.location", "ssl_ca_location"),
    ("ssl.certificate.location", "ssl_certificate_location"),
    ("ssl.key.location", "ssl_key_location"),
)


def build_kafka_auth_config(config: KafkaConfig) -> dict[str, Any]:
    """Security entries for a Consumer/Producer/AdminClient config dict.

    Empty for a plaintext, unauthenticated cluster.
    """
    auth: dict[str, Any] = {}
    if config.security_protocol != "PLAINTEXT":
        auth["security.protocol"] = config.security_protocol
    for key, attr in _SSL_FILES:
        if value := getattr(config, attr):
            auth[key] = value

    mechanism = _SASL_MECHANISMS.get(config.auth_mechanism)
    if mechanism is not None:
        secret = config.sasl_password
        auth.update(
            {
                "security.protocol": config.security_protocol,
                "sasl.mechanism": mechanism,
                "sasl.username": config.sasl_username,
                "sasl.password": secret.get_secret_value() if secret else "",
            }
        )
    return auth


def base_client_config(config: KafkaConfig) -> dict[str, Any]:
    """Bootstrap servers plus :func:`build_kafka_auth_config`."""
    return {
        "bootstrap.servers": config.bootstrap_servers,
        **build_kafka_auth_config(config),
    }
