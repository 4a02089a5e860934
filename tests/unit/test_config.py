#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#

# pylint: disable=redefined-outer-name,missing-docstring

import json

import pytest
import yaml

from opsconductor import config


@pytest.fixture(scope="session")
def ops_config():
    return {
        "Dispatcher": {"concurrency_limit": 30, "padding": 3, "receive_max": 5},
        "Selector": {
            "queue_url": "https://sqs.us-east-1.amazonaws.com/111122223333/resources",
            "executions_table": "TaskExecutions",
            "max_pages": 50,
            "role_duration": 3600,
        },
        "Runner": {"max_workers": 4},
        "Tasks": {
            "table": "Tasks",
            "selector_function_arn": "arn:aws:lambda:us-east-1:111122223333:function:sel",
        },
        "Metrics": {
            "enabled": True,
            "solution_id": "SO0065",
            "solution_version": "v1.0.0",
            "solution_uuid": "abc-123",
        },
        "Logging": {"level": "DEBUG"},
        "Empty": None,
    }


@pytest.fixture(scope="session")
def json_config(tmp_path_factory, ops_config):
    filename = tmp_path_factory.getbasetemp() / "ops.json"
    with filename.open("w") as f:
        json.dump(ops_config, f)
    return filename


@pytest.fixture(scope="session")
def yaml_config(tmp_path_factory, ops_config):
    filename = tmp_path_factory.getbasetemp() / "ops.yaml"
    with filename.open("w") as f:
        yaml.dump(ops_config, f)
    return filename


@pytest.mark.parametrize(
    "keys, default, type_, expected",
    [
        (["Dispatcher", "padding"], None, None, 3),
        (["Dispatcher", "padding"], 2, config.Int, 3),
        (["Dispatcher", "missing"], 2, config.Int, 2),
        (["Metrics", "enabled"], False, config.Bool, True),
        (["Missing", "enabled"], False, config.Bool, False),
        (["Tasks", "selector_function_arn"], None, config.ARN, "arn:aws:lambda:us-east-1:111122223333:function:sel"),
        (["Logging", "level"], None, config.LogLevel, "DEBUG"),
    ],
)
def test_get_with_valid_types(yaml_config, keys, default, type_, expected):
    c = config.Config.from_file(yaml_config)
    assert c.get(*keys, default=default, type=type_) == expected


@pytest.mark.parametrize(
    "keys",
    [
        ["Missing"],
        ["Dispatcher", "missing"],
        ["Empty", "missing"],
        ["Dispatcher", "padding", "missing"],
    ],
)
def test_get_must_exist(yaml_config, keys):
    c = config.Config.from_file(yaml_config)
    with pytest.raises(ValueError):
        c.get(*keys, must_exist=True)


@pytest.mark.parametrize(
    "keys, type_",
    [
        (["Dispatcher", "padding"], config.Str),
        (["Metrics", "enabled"], config.Int),
        (["Selector", "queue_url"], config.ARN),
        (["Tasks", "table"], config.URL),
    ],
)
def test_get_with_invalid_types(yaml_config, keys, type_):
    c = config.Config.from_file(yaml_config)
    with pytest.raises(TypeError):
        c.get(*keys, type=type_)


def test_from_file_with_json(json_config):
    c = config.Config.from_file(json_config)
    assert c.get("Runner", "max_workers") == 4


def test_from_file_missing(tmp_path):
    c = config.Config.from_file(tmp_path / "missing.yaml")
    assert c.get("Runner", "max_workers", default=10) == 10

    with pytest.raises(FileNotFoundError):
        config.Config.from_file(tmp_path / "missing.yaml", must_exist=True)


def test_from_file_empty_yaml(tmp_path):
    filename = tmp_path / "empty.yaml"
    filename.write_text("")
    assert config.Config.from_file(filename).get("Runner") is None


def test_register_filetype(tmp_path):
    filename = tmp_path / "ops.cfg"
    filename.write_text('{"Runner": {"max_workers": 2}}')

    with pytest.raises(ValueError):
        config.Config.from_file(filename)

    config.Config.register_filetype(config.JSONConfig, ".cfg")
    assert config.Config.from_file(filename).get("Runner", "max_workers") == 2


@pytest.mark.parametrize(
    "type_, test_input, expected",
    [
        (config.Str, "queue", True),
        (config.Str, 10, False),
        (config.Int, 10, True),
        (config.Int, True, False),
        (config.Int, "10", False),
        (config.Bool, False, True),
        (config.Bool, 0, False),
        (config.URL, "https://sqs.amazonaws.com/q", True),
        (config.URL, "sqs.amazonaws.com/q", False),
        (config.ARN, "arn:aws:lambda:us-east-1:1:function:f", True),
        (config.ARN, "aws:lambda", False),
        (config.LogLevel, "WARN", True),
        (config.LogLevel, "TRACE", False),
        (config.Choice("a", 1), 1, True),
        (config.Choice("a", 1), True, False),
        (config.Or(config.Int, config.Str), "x", True),
        (config.Or(config.Int, config.Str), 1.5, False),
    ],
)
def test_type_check(type_, test_input, expected):
    assert type_.type_check(test_input) == expected


def test_type_names():
    assert str(config.Int) == "int"
    assert str(config.Or(config.Int, config.Str)) == "(int or str)"
    assert str(config.Const(5)) == "constant '5'"


def test_settings_defaults():
    s = config.Settings(config.EmptyConfig, environ={})
    assert s.resource_queue_url is None
    assert s.executions_table is None
    assert s.concurrency_limit == 25
    assert s.concurrency_padding == 2
    assert s.receive_max == 10
    assert s.max_workers == 10
    assert s.max_pages == 1000
    assert s.role_duration == 900
    assert s.send_anonymous_usage is False
    assert s.log_level == "INFO"
    assert not s.metrics_enabled


def test_settings_from_config(yaml_config):
    s = config.Settings(config.Config.from_file(yaml_config), environ={})
    assert s.resource_queue_url.endswith("/resources")
    assert s.executions_table == "TaskExecutions"
    assert s.tasks_table == "Tasks"
    assert s.concurrency_limit == 30
    assert s.concurrency_padding == 3
    assert s.receive_max == 5
    assert s.max_workers == 4
    assert s.max_pages == 50
    assert s.role_duration == 900, "role duration must be capped"
    assert s.log_level == "DEBUG"
    assert s.metrics_enabled


def test_settings_environment_overrides_config(yaml_config):
    environ = {
        "ResourceQueueUrl": "https://sqs.us-west-2.amazonaws.com/1/other",
        "TaskExecutionsTableName": "Runs",
        "AutomationConcurrencyLimit": "40",
        "AutomationConcurrencyPadding": " 5 ",
        "MaxWorkers": "",
        "SendAnonymousUsageData": "No",
        "LogLevel": "error",
    }
    s = config.Settings(config.Config.from_file(yaml_config), environ=environ)
    assert s.resource_queue_url == "https://sqs.us-west-2.amazonaws.com/1/other"
    assert s.executions_table == "Runs"
    assert s.concurrency_limit == 40
    assert s.concurrency_padding == 5
    assert s.max_workers == 4, "blank variables fall back to the config"
    assert s.send_anonymous_usage is False
    assert not s.metrics_enabled
    assert s.log_level == "ERROR"


def test_settings_usage_data_requires_identifiers():
    s = config.Settings(
        config.EmptyConfig,
        environ={"SendAnonymousUsageData": "Yes", "SolutionId": "SO0065"},
    )
    assert s.send_anonymous_usage is True
    assert not s.metrics_enabled


@pytest.mark.parametrize(
    "environ",
    [
        {"AutomationConcurrencyLimit": "many"},
        {"AutomationConcurrencyLimit": "0"},
        {"AutomationConcurrencyPadding": "25"},
        {"AutomationConcurrencyPadding": "-1"},
        {"MaxWorkers": "0"},
        {"LogLevel": "verbose"},
    ],
)
def test_settings_invalid_environment(environ):
    with pytest.raises(ValueError):
        config.Settings(config.EmptyConfig, environ=environ)


def test_settings_invalid_config_type():
    c = config.Config({"Dispatcher": {"receive_max": "10"}})
    with pytest.raises(TypeError):
        config.Settings(c, environ={})


def test_settings_receive_max_bound():
    c = config.Config({"Dispatcher": {"receive_max": 11}})
    with pytest.raises(ValueError):
        config.Settings(c, environ={})


def test_settings_load_uses_config_env(tmp_path):
    filename = tmp_path / "custom.yaml"
    filename.write_text("Runner:\n  max_workers: 7\n")
    s = config.Settings.load(environ={"OPSCONDUCTOR_CONFIG": str(filename)})
    assert s.max_workers == 7


@pytest.mark.parametrize("duration", [0, -1, 300, 899])
def test_settings_role_duration_below_assume_role_minimum(duration):
    c = config.Config({"Selector": {"role_duration": duration}})
    with pytest.raises(ValueError, match="role_duration"):
        config.Settings(c, environ={})
