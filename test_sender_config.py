#!/usr/bin/env python3
"""
Test sender configuration: defaults, validation, environment loading and
logging setup. No network operations are performed.
"""

import logging
import sys
from unittest.mock import patch

import pytest

sys.path.insert(0, '.')

from simple_mail import (
    MailError,
    MailErrorKind,
    SenderConfig,
    SimpleMailSender,
    setup_logging,
)

MAIL_ENV_VARS = [
    'MAIL_SENDER_ADDRESS',
    'MAIL_SECRET',
    'MAIL_SMTP_HOST',
    'MAIL_SMTP_PORT',
    'MAIL_SMTP_AUTH',
    'MAIL_USE_TLS',
    'MAIL_USE_SSL',
    'MAIL_TIMEOUT',
    'MAIL_CHARSET',
]


@pytest.fixture
def clean_env(monkeypatch):
    for name in MAIL_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_defaults():
    config = SenderConfig(host='smtp.example.com', sender_address='sender@example.com', secret='pw')

    assert config.port == 25
    assert config.auth is True
    assert config.use_tls is False
    assert config.use_ssl is False
    assert config.timeout is None
    assert config.charset == 'utf-8'
    config.validate()


def test_repr_hides_secret():
    config = SenderConfig(host='smtp.example.com', sender_address='sender@example.com', secret='s3cr3t-value')

    assert 's3cr3t-value' not in repr(config)


def test_config_is_immutable():
    config = SenderConfig(host='smtp.example.com', sender_address='sender@example.com', secret='pw')

    with pytest.raises(AttributeError):
        config.host = 'smtp.other.com'


@pytest.mark.parametrize('overrides', [
    {'host': ''},
    {'host': '   '},
    {'port': 0},
    {'port': 70000},
    {'timeout': 0},
    {'use_tls': True, 'use_ssl': True},
])
def test_validate_rejects_invalid_values(overrides):
    values = {'host': 'smtp.example.com', 'sender_address': 'sender@example.com', 'secret': 'pw'}
    values.update(overrides)
    config = SenderConfig(**values)

    with pytest.raises(MailError) as exc_info:
        config.validate()
    assert exc_info.value.kind is MailErrorKind.CONFIGURATION

    with patch('simple_mail.MailSession') as session_cls:
        with pytest.raises(MailError):
            SimpleMailSender(config)
    session_cls.assert_not_called()


def test_validate_warns_on_unusual_ports(caplog):
    config = SenderConfig(
        host='smtp.example.com',
        sender_address='sender@example.com',
        secret='pw',
        port=2525,
        use_tls=True
    )

    with caplog.at_level(logging.WARNING, logger='simple_mail'):
        config.validate()

    assert 'not a common STARTTLS port' in caplog.text


def test_from_env_infers_host(clean_env):
    clean_env.setenv('MAIL_SENDER_ADDRESS', 'user@sub.example.com')
    clean_env.setenv('MAIL_SECRET', 'pw')

    config = SenderConfig.from_env()

    assert config.host == 'smtp.sub.example.com'
    assert config.sender_address == 'user@sub.example.com'
    assert config.secret == 'pw'
    assert config.port == 25
    assert config.auth is True
    assert config.use_tls is False
    assert config.timeout is None


def test_from_env_reads_optional_values(clean_env):
    clean_env.setenv('MAIL_SENDER_ADDRESS', 'first.last@example.com')
    clean_env.setenv('MAIL_SECRET', 'pw')
    clean_env.setenv('MAIL_SMTP_HOST', 'mail.example.com')
    clean_env.setenv('MAIL_SMTP_PORT', '587')
    clean_env.setenv('MAIL_SMTP_AUTH', 'false')
    clean_env.setenv('MAIL_USE_TLS', 'yes')
    clean_env.setenv('MAIL_TIMEOUT', '12.5')
    clean_env.setenv('MAIL_CHARSET', 'iso-8859-1')

    config = SenderConfig.from_env()

    assert config.host == 'mail.example.com'
    assert config.port == 587
    assert config.auth is False
    assert config.use_tls is True
    assert config.use_ssl is False
    assert config.timeout == 12.5
    assert config.charset == 'iso-8859-1'


def test_from_env_missing_required(clean_env):
    clean_env.setenv('MAIL_SENDER_ADDRESS', 'user@example.com')

    with pytest.raises(MailError) as exc_info:
        SenderConfig.from_env()

    assert exc_info.value.kind is MailErrorKind.CONFIGURATION
    assert 'MAIL_SECRET' in str(exc_info.value)


@pytest.mark.parametrize('name,value', [
    ('MAIL_SMTP_PORT', 'abc'),
    ('MAIL_TIMEOUT', 'soon'),
])
def test_from_env_invalid_numbers(clean_env, name, value):
    clean_env.setenv('MAIL_SENDER_ADDRESS', 'user@example.com')
    clean_env.setenv('MAIL_SECRET', 'pw')
    clean_env.setenv(name, value)

    with pytest.raises(MailError) as exc_info:
        SenderConfig.from_env()

    assert exc_info.value.kind is MailErrorKind.CONFIGURATION
    assert name in str(exc_info.value)


def test_from_env_cannot_infer_host_from_bad_address(clean_env):
    clean_env.setenv('MAIL_SENDER_ADDRESS', 'first.last@example.com')
    clean_env.setenv('MAIL_SECRET', 'pw')

    with pytest.raises(MailError) as exc_info:
        SenderConfig.from_env()

    assert exc_info.value.kind is MailErrorKind.CONFIGURATION


def test_sender_from_env(clean_env):
    clean_env.setenv('MAIL_SENDER_ADDRESS', 'user@example.com')
    clean_env.setenv('MAIL_SECRET', 'pw')

    sender = SimpleMailSender.from_env(default_recipients=['b@example.com'])

    assert sender.is_configured
    assert sender.session.host == 'smtp.example.com'
    assert sender.default_recipients == ['b@example.com']


def test_from_address_passes_options():
    sender = SimpleMailSender.from_address('user@example.com', 'pw', port=587, use_tls=True, timeout=5)

    assert sender.config.port == 587
    assert sender.config.use_tls is True
    assert sender.config.timeout == 5


@patch('simple_mail.logging.basicConfig')
def test_setup_logging_uses_given_level(mock_basic_config):
    setup_logging('debug')

    assert mock_basic_config.call_args[1]['level'] == logging.DEBUG


@patch('simple_mail.logging.basicConfig')
def test_setup_logging_reads_environment(mock_basic_config, monkeypatch):
    monkeypatch.setenv('LOG_LEVEL', 'WARNING')
    setup_logging()
    assert mock_basic_config.call_args[1]['level'] == logging.WARNING

    monkeypatch.setenv('LOG_LEVEL', 'nonsense')
    setup_logging()
    assert mock_basic_config.call_args[1]['level'] == logging.INFO
