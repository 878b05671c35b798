"""
Integration tests for amqpconsumer.

These tests require a RabbitMQ broker, provisioned through testcontainers.
Tests are skipped automatically if Docker or testcontainers is not available.
"""
