import pytest

from clinic_backend.core import config


@pytest.mark.parametrize(('raw', 'expected'), [(None, False), ('true', True), (' YES ', True), ('0', False), ('off', False)])
def test_get_bool(raw, expected: bool) -> None:
    assert config._get_bool(raw) is expected


def test_get_int_and_list_fall_back_to_defaults() -> None:
    assert config._get_int(None, 15) == 15
    assert config._get_int('  ', 15) == 15
    assert config._get_int('30', 15) == 30
    assert config._get_list(None, ['a']) == ['a']
    assert config._get_list('http://a, ,http://b', []) == ['http://a', 'http://b']


@pytest.mark.parametrize(
    ('overrides', 'message'),
    [
        ({'APP_ENV': 'production', 'JWT_SECRET_KEY': 'change-me'}, 'JWT_SECRET_KEY'),
        ({'DATABASE_URL': ''}, 'DATABASE_URL'),
        ({'SLOT_INTERVAL_MINUTES': 0}, 'SLOT_INTERVAL_MINUTES'),
        ({'MIN_SHIFT_MINUTES': 600, 'MAX_SHIFT_MINUTES': 480}, 'MIN_SHIFT_MINUTES'),
    ],
)
def test_validate_runtime_config_rejects_unsafe_settings(monkeypatch, overrides: dict, message: str) -> None:
    for name, value in overrides.items():
        monkeypatch.setattr(config, name, value)

    with pytest.raises(RuntimeError, match=message):
        config.validate_runtime_config()


def test_validate_runtime_config_accepts_defaults(monkeypatch) -> None:
    monkeypatch.setattr(config, 'APP_ENV', 'development')
    monkeypatch.setattr(config, 'DATABASE_URL', 'sqlite:///./test.db')

    config.validate_runtime_config()
