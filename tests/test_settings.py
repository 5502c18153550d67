import dataclasses
import logging

import pytest

from common.config import ConfigError
from entrypoint.settings import AUTH_METHODS_ANY, load_settings


def test_defaults_when_environment_is_empty():
    s = load_settings({})
    assert s.user == "testuser"
    assert s.port == 22
    assert s.debug_level == 0
    assert s.max_auth_tries == 6
    assert s.login_grace_time == 120
    assert s.password_auth is True
    assert s.pubkey_auth is True
    assert s.challenge_response_auth is False
    assert s.auth_methods == AUTH_METHODS_ANY
    assert s.agent_start is False
    assert s.agent_socket_path == "/tmp/ssh-agent.sock"
    assert s.has_password is False


@pytest.mark.parametrize("raw", ["abc", "0", "65536", "-1", "", "22a", "99999"])
def test_invalid_port_falls_back_to_default(raw, caplog):
    with caplog.at_level(logging.WARNING):
        s = load_settings({"SSH_PORT": raw})
    assert s.port == 22
    assert "Invalid SSH_PORT" in caplog.text


def test_valid_port_kept():
    assert load_settings({"SSH_PORT": "2222"}).port == 2222
    assert load_settings({"SSH_PORT": "65535"}).port == 65535


@pytest.mark.parametrize("raw", ["4", "x", "-1", ""])
def test_invalid_debug_level_reset_to_zero(raw, caplog):
    with caplog.at_level(logging.WARNING):
        assert load_settings({"SSH_DEBUG_LEVEL": raw}).debug_level == 0
    assert "Invalid SSH_DEBUG_LEVEL" in caplog.text


@pytest.mark.parametrize("raw", ["0", "abc", "-3", "1.5"])
def test_invalid_max_auth_tries_reset(raw):
    assert load_settings({"SSH_MAX_AUTH_TRIES": raw}).max_auth_tries == 6


def test_login_grace_time_accepts_zero_and_rejects_negative():
    assert load_settings({"SSH_LOGIN_GRACE_TIME": "0"}).login_grace_time == 0
    assert load_settings({"SSH_LOGIN_GRACE_TIME": "-5"}).login_grace_time == 120
    assert load_settings({"SSH_LOGIN_GRACE_TIME": "30"}).login_grace_time == 30


def test_empty_user_is_fatal():
    with pytest.raises(ConfigError, match="SSH_USER cannot be empty"):
        load_settings({"SSH_USER": "  "})


@pytest.mark.parametrize("password", ["secret\nroot:owned", "secret\rroot:owned", "\n"])
def test_password_with_line_break_is_fatal(password):
    with pytest.raises(ConfigError, match="SSH_PASSWORD must not contain line breaks"):
        load_settings({"SSH_PASSWORD": password})


def test_password_kept_verbatim():
    assert load_settings({"SSH_PASSWORD": " p@ss:word\t "}).password == " p@ss:word\t "


def test_no_authentication_path_is_fatal():
    env = {
        "SSH_PERMIT_PASSWORD_AUTH": "no",
        "SSH_PERMIT_PUBKEY_AUTH": "no",
        "SSH_CHALLENGE_RESPONSE_AUTH": "no",
        "SSH_AUTHORIZED_KEYS": "\n  \n",
    }
    with pytest.raises(ConfigError, match="No authentication method"):
        load_settings(env)


@pytest.mark.parametrize(
    "extra",
    [
        {"SSH_AUTHORIZED_KEYS": "ssh-ed25519 AAAA user@host"},
        {"SSH_CHALLENGE_RESPONSE_AUTH": "yes"},
        {"SSH_PERMIT_PUBKEY_AUTH": "true"},
    ],
)
def test_any_single_auth_path_is_enough(extra):
    env = {
        "SSH_PERMIT_PASSWORD_AUTH": "no",
        "SSH_PERMIT_PUBKEY_AUTH": "no",
        "SSH_CHALLENGE_RESPONSE_AUTH": "no",
    }
    env.update(extra)
    load_settings(env)


def test_auth_methods_passed_verbatim_and_empty_means_any():
    s = load_settings({"SSH_AUTH_METHODS": "publickey,password"})
    assert s.auth_methods == "publickey,password"
    assert s.restricts_auth_methods
    s = load_settings({"SSH_AUTH_METHODS": "  "})
    assert s.auth_methods == AUTH_METHODS_ANY
    assert not s.restricts_auth_methods


def test_boolean_spellings_and_self_healing(caplog):
    s = load_settings({"SSH_X11_FORWARDING": "TRUE", "SSH_USE_DNS": "on", "SSH_TCP_FORWARDING": "0"})
    assert s.x11_forwarding is True
    assert s.use_dns is True
    assert s.tcp_forwarding is False
    with caplog.at_level(logging.WARNING):
        s = load_settings({"SSH_AGENT_FORWARDING": "maybe"})
    assert s.agent_forwarding is True
    assert "Invalid SSH_AGENT_FORWARDING" in caplog.text


def test_root_login_enumeration():
    assert load_settings({"SSH_PERMIT_ROOT_LOGIN": "prohibit-password"}).permit_root_login == "prohibit-password"
    assert load_settings({"SSH_PERMIT_ROOT_LOGIN": "YES"}).permit_root_login == "yes"
    assert load_settings({"SSH_PERMIT_ROOT_LOGIN": "sometimes"}).permit_root_login == "no"


def test_multiline_inputs_split_into_non_empty_lines():
    s = load_settings(
        {
            "SSH_AUTHORIZED_KEYS": "ssh-ed25519 AAAA a\n\nssh-rsa BBBB b\n",
            "SSH_AGENT_KEYS": " Zm9v \nYmFy",
            "SSH_HOST_KEYS": "ed25519:Zm9v\n",
        }
    )
    assert s.authorized_keys == ("ssh-ed25519 AAAA a", "ssh-rsa BBBB b")
    assert s.agent_keys == ("Zm9v", "YmFy")
    assert s.host_keys == ("ed25519:Zm9v",)


def test_environment_overrides_defaults_file_values():
    s = load_settings({"SSH_PORT": "2200"}, defaults={"SSH_PORT": "2222", "SSH_USER": "alice", "UNRELATED": "x"})
    assert s.port == 2200
    assert s.user == "alice"


def test_settings_record_is_immutable():
    s = load_settings({})
    with pytest.raises(dataclasses.FrozenInstanceError):
        s.port = 2022
