"""Unit tests for Kafka client config builders and the producer helpers."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

from pydantic import SecretStr

from db_install_worker.config.models import KafkaAuthMechanism, KafkaConfig
from db_install_worker.streaming.auth import (
    base_client_config,
    build_kafka_auth_config,
)
from db_install_worker.streaming.producer import create_producer, produce_message


class TestBuildKafkaAuthConfig:
    def test_none_mechanism_returns_empty(self):
        assert build_kafka_auth_config(KafkaConfig()) == {}

    def test_sasl_plain(self):
        config = KafkaConfig(
            auth_mechanism=KafkaAuthMechanism.SASL_PLAIN,
            security_protocol="SASL_SSL",
            sasl_username="user",
            sasl_password=SecretStr("pass"),
        )
        result = build_kafka_auth_config(config)
        assert result["security.protocol"] == "SASL_SSL"
        assert result["sasl.mechanism"] == "PLAIN"
        assert result["sasl.username"] == "user"
        assert result["sasl.password"] == "pass"

    def test_sasl_scram_256(self):
        config = KafkaConfig(
            auth_mechanism=KafkaAuthMechanism.SASL_SCRAM_256,
            security_protocol="SASL_SSL",
            sasl_username="user",
            sasl_password=SecretStr("pass"),
        )
        assert build_kafka_auth_config(config)["sasl.mechanism"] == "SCRAM-SHA-256"

    def test_ssl_only(self):
        config = KafkaConfig(
            security_protocol="SSL",
            ssl_ca_location="/etc/ssl/ca.pem",
            ssl_certificate_location="/etc/ssl/client.pem",
            ssl_key_location="/etc/ssl/client.key",
        )
        result = build_kafka_auth_config(config)
        assert result == {
            "security.protocol": "SSL",
            "ssl.ca.location": "/etc/ssl/ca.pem",
            "ssl.certificate.location": "/etc/ssl/client.pem",
            "ssl.key.location": "/etc/ssl/client.key",
        }

    def test_base_client_config(self):
        config = KafkaConfig(bootstrap_servers="k1:9092,k2:9092")
        assert base_client_config(config) == {"bootstrap.servers": "k1:9092,k2:9092"}


class TestProducer:
    def test_create_producer_is_idempotent(self):
        with patch("db_install_worker.streaming.producer.Producer") as producer_cls:
            create_producer(KafkaConfig(), client_id="tester")
        conf = producer_cls.call_args.args[0]
        assert conf["enable.idempotence"] is True
        assert conf["acks"] == "all"
        assert conf["client.id"] == "tester"

    def test_produce_message_flushes(self):
        producer = MagicMock()
        producer.flush.return_value = 0
        assert produce_message(producer, "install", b"{}", key=b"1") == 0
        producer.produce.assert_called_once_with(
            topic="install", value=b"{}", key=b"1"
        )
        producer.flush.assert_called_once_with(timeout=10.0)
