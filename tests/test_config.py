# test_config.py - Settings from the environment
from pathlib import Path

import pytest

from prism_crypto.config import DEFAULT_MAX_SKIP, Settings


def test_defaults():
    settings = Settings.from_env({})

    assert settings.max_skip == DEFAULT_MAX_SKIP == 1000
    assert settings.state_dir == Path("ratchet_states")
    assert settings.log_level == "INFO"


def test_overrides():
    settings = Settings.from_env({
        'PRISM_STATE_DIR': '/tmp/states',
        'PRISM_KEY_DIR': '/tmp/keys',
        'PRISM_MAX_SKIP': '50',
        'PRISM_PREKEY_BATCH_SIZE': '4',
        'PRISM_LOG_LEVEL': 'debug',
    })

    assert settings.state_dir == Path('/tmp/states')
    assert settings.key_dir == Path('/tmp/keys')
    assert (settings.max_skip, settings.prekey_batch_size) == (50, 4)
    assert settings.log_level == "DEBUG"


@pytest.mark.parametrize("value", ["zero", "0", "-3"])
def test_invalid_integers(value):
    with pytest.raises(ValueError):
        Settings.from_env({'PRISM_MAX_SKIP': value})
