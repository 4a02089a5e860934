#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#
"""Provides the YAML/JSON config reader and the resolved runtime `Settings`.

## Overview

`Config` is a convenient representation of values stored within a dict, which
may contain other dicts. It provides for default values, mandatory values, as
well as the ability to type-check values using type descriptors. `Config`
can be subclassed to provide parsers for various configuration file types. This
module includes `JSONConfig` and `YAMLConfig` implementations registered with
`Config.from_file`, which picks the parser from the file extension.

`Settings` resolves everything the selector, dispatcher, and task manager need
at runtime. Values are read from environment variables first (this is how the
Lambda functions are configured), then from the configuration file, and finally
fall back to built-in defaults.

## Configuration File

The configuration file is loaded from `$HOME/.opsconductor.yaml` unless the
`OPSCONDUCTOR_CONFIG` environment variable points elsewhere. All sections are
optional:

    Selector:
      queue_url: https://sqs.us-east-1.amazonaws.com/111122223333/resource-queue
      executions_table: TaskExecutions
      max_pages: 1000
      role_duration: 900
    Dispatcher:
      concurrency_limit: 25
      padding: 2
      receive_max: 10
    Runner:
      max_workers: 10
    Tasks:
      table: Tasks
      selector_function_arn: arn:aws:lambda:us-east-1:111122223333:function:resource-selector
    Metrics:
      enabled: false
      solution_id: SO0065
      solution_version: v1.0.0
      solution_uuid: 00000000-0000-0000-0000-000000000000
    Logging:
      level: INFO
    CLI:
      threads: 10
      log_level: ERROR

## Type Checking

Values are type-checked with the type objects defined in this module: `Str`,
`Int`, `Bool`, `URL`, `ARN`, and `LogLevel`, plus the type classes `StrMatch`,
`Choice`, and the combinator `Or`. For example, the following type matches a
int or the string "auto":

    Or(Int, Const("auto"))

If any of the values do not match the expected type, a `TypeError` is raised.
"""

import json
import logging
import os
import re
from functools import reduce
from pathlib import Path

import yaml

LOG = logging.getLogger(__name__)

# pylint: disable=unidiomatic-typecheck
#
# Because isinstance(True, int) is true, we do not rely on isinstance for our
# type checking in this module as we want to match exact types. True should not
# type check successfully against an int.


class Config:
    """A `Config` can read type-checked values from a Python dictionary.

    This class provides an interface to read values from a dictionary while
    providing for default values, mandatory values, as well as the ability to
    type-check values. The class also contains a registry of configuration
    parsers based on file extensions, so users can load configs from files.
    """

    _filetypes = {}

    @classmethod
    def register_filetype(cls, config_class, *extensions):
        """Register a parser for files with one of the specified extensions."""
        for ext in extensions:
            cls._filetypes[ext] = config_class

    @classmethod
    def from_file(cls, filename, must_exist=False):
        """Factory method to load a `Config` from a filename.

        If `must_exist` is true, a `FileNotFoundError` is raised if the filename
        does not exist, otherwise an empty `Config` is returned.
        """
        path = Path(filename)

        if not path.is_file():
            if must_exist:
                raise FileNotFoundError(f"Config file not found: {filename}")
            return Config({})

        if path.suffix not in cls._filetypes:
            raise ValueError(f"Unregistered file type extension: {path.suffix}")

        LOG.info("loading configuration from %s", path)
        with path.open(encoding="utf-8") as f:
            return cls._filetypes[path.suffix](f)

    def __init__(self, d):
        # An empty YAML document loads as None.
        self.conf = d or {}

    def get(self, *keys, default=None, type=None, must_exist=False):
        """Return the specified value from the `Config`.

        Specify the value to read by providing the keys required to reach the
        value in the configuration. If the value is not found at the specified
        key path, `None` or the `default` value is returned unless the
        `must_exist` flag is `True`, in which case a `ValueError` is raised.

        Values can be optionally type-checked:

            c.get('Dispatcher', 'concurrency_limit', type=Int, default=25)
            c.get('Metrics', 'enabled', type=Bool, default=False)
            c.get('Logging', 'level', type=Choice('DEBUG', 'INFO'))
        """
        # pylint: disable=redefined-builtin

        # Follow the list of keys into the dictionary. A missing key yields an
        # empty dict.
        try:
            value = reduce(lambda a, p: a.get(p, {}), keys, self.conf)
        except AttributeError as e:
            raise ValueError(
                f"Error in config: {'->'.join(keys[:-1])}: not a dictionary"
            ) from e

        if value == {}:
            if must_exist:
                raise ValueError(f"Error in config: {'->'.join(keys)}: must be set")
            value = default

        if value is None or not type:
            return value

        if type.type_check(value):
            return value

        raise TypeError(
            f"Error in config: {'->'.join(keys)}: not a {type}: {repr(value)}"
        )


EmptyConfig = Config({})
"""Singleton representing an empty `Config`."""


class YAMLConfig(Config):
    """Loads a YAML configuration from a stream."""

    def __init__(self, stream):
        super().__init__(yaml.safe_load(stream))


class JSONConfig(Config):
    """Loads a JSON configuration from a stream."""

    def __init__(self, stream):
        super().__init__(json.load(stream))


Config.register_filetype(JSONConfig, ".json", ".jsn")
Config.register_filetype(YAMLConfig, ".yaml", ".yml")


class Type:
    """Represents a type that can be used in type-check comparisons."""

    def type_check(self, obj):
        """Returns true if obj is a type matching this `Type`."""
        raise NotImplementedError

    def __str__(self):
        raise NotImplementedError


class Or(Type):
    """Represents a type that is one of the `config_types`."""

    def __init__(self, *config_types):
        self.config_types = config_types

    def type_check(self, obj):
        return any(t.type_check(obj) for t in self.config_types)

    def __str__(self):
        return "(" + " or ".join(str(t) for t in self.config_types) + ")"


class Const(Type):
    """Represents a constant value."""

    def __init__(self, const):
        self.const = const

    def type_check(self, obj):
        # True == 1 in python, so compare the exact types first.
        if type(obj) != type(self.const):  # noqa: E721
            return False
        return obj == self.const

    def __str__(self):
        return f"constant '{self.const}'"


class Choice(Or):
    """Represents a choice of constants."""

    def __init__(self, *constants):
        super().__init__(*[Const(c) for c in constants])


class Scalar(Type):
    """Represents a type that is a scalar matching one of the builtin types."""

    def __init__(self, type_):
        self.type = type_

    def type_check(self, obj):
        return type(obj) == self.type  # noqa: E721

    def __str__(self):
        return self.type.__name__


class StrMatch(Type):
    """Represents a string matching `pattern` via `re.search`."""

    def __init__(self, pattern):
        self.pattern = pattern

    def type_check(self, obj):
        if type(obj) != str:  # noqa: E721
            return False
        return bool(re.search(self.pattern, obj))

    def __str__(self):
        return f"str matching '{self.pattern}'"


Str = Scalar(str)
"""Singleton representing a str."""

Int = Scalar(int)
"""Singleton representing an int."""

Bool = Scalar(bool)
"""Singleton representing a bool."""

URL = StrMatch(r"^[^:]+://")
"""Singleton representing a URL in the form of xxxx://."""

ARN = StrMatch(r"^arn:[^:]*:[^:]+:")
"""Singleton representing an Amazon Resource Name."""

LogLevel = Choice("DEBUG", "INFO", "WARN", "WARNING", "ERROR")
"""Singleton representing a logging level name."""


def config_filename(environ=None):
    """Returns the path to the user configuration file."""
    environ = os.environ if environ is None else environ
    return environ.get("OPSCONDUCTOR_CONFIG", Path.home() / ".opsconductor.yaml")


MAX_ROLE_DURATION = 900
"""Length, in seconds, of the assumed task role session: the AssumeRole minimum
and the task roles' maximum."""

MAX_RECEIVE = 10
"""Largest number of messages a single queue receive may return."""


class Settings:
    """Runtime settings resolved from the environment and a `Config`.

    Environment variables take precedence over the configuration file. The
    variable names match the ones set on the deployed Lambda functions. A
    `ValueError` or `TypeError` is raised if a value is invalid.
    """

    def __init__(self, config=EmptyConfig, environ=None):
        env = os.environ if environ is None else environ
        get = config.get

        self.resource_queue_url = _env(env, "ResourceQueueUrl") or get(
            "Selector", "queue_url", type=URL
        )
        self.executions_table = _env(env, "TaskExecutionsTableName") or get(
            "Selector", "executions_table", type=Str
        )
        self.tasks_table = _env(env, "TasksTableName") or get(
            "Tasks", "table", type=Str
        )
        self.selector_function_arn = _env(env, "ResourceSelectorArn") or get(
            "Tasks", "selector_function_arn", type=ARN
        )

        self.concurrency_limit = _env_int(
            env,
            "AutomationConcurrencyLimit",
            get("Dispatcher", "concurrency_limit", type=Int, default=25),
        )
        self.concurrency_padding = _env_int(
            env,
            "AutomationConcurrencyPadding",
            get("Dispatcher", "padding", type=Int, default=2),
        )
        self.receive_max = get("Dispatcher", "receive_max", type=Int, default=10)
        self.max_workers = _env_int(
            env, "MaxWorkers", get("Runner", "max_workers", type=Int, default=10)
        )
        self.max_pages = get("Selector", "max_pages", type=Int, default=1000)
        self.role_duration = min(
            get("Selector", "role_duration", type=Int, default=MAX_ROLE_DURATION),
            MAX_ROLE_DURATION,
        )

        usage = _env(env, "SendAnonymousUsageData")
        if usage is None:
            self.send_anonymous_usage = get("Metrics", "enabled", type=Bool, default=False)
        else:
            self.send_anonymous_usage = usage.lower() in ("yes", "true")
        self.solution_id = _env(env, "SolutionId") or get(
            "Metrics", "solution_id", type=Str
        )
        self.solution_version = _env(env, "SolutionVersion") or get(
            "Metrics", "solution_version", type=Str
        )
        self.solution_uuid = _env(env, "SolutionUuid") or get(
            "Metrics", "solution_uuid", type=Str
        )

        self.log_level = (
            _env(env, "LogLevel") or get("Logging", "level", type=LogLevel, default="INFO")
        ).upper()

        self._validate()

    @classmethod
    def load(cls, environ=None):
        """Factory to load settings from the user configuration file."""
        return cls(Config.from_file(config_filename(environ)), environ)

    def _validate(self):
        if self.concurrency_limit < 1:
            raise ValueError("concurrency limit must be a positive integer")
        if not 0 <= self.concurrency_padding < self.concurrency_limit:
            raise ValueError("concurrency padding must be less than the concurrency limit")
        if not 1 <= self.receive_max <= MAX_RECEIVE:
            raise ValueError(f"receive_max must be between 1 and {MAX_RECEIVE}")
        if self.max_workers < 1:
            raise ValueError("max_workers must be a positive integer")
        if self.max_pages < 1:
            raise ValueError("max_pages must be a positive integer")
        if self.role_duration < MAX_ROLE_DURATION:
            raise ValueError(
                f"role_duration must be at least {MAX_ROLE_DURATION} seconds, "
                "the shortest session AssumeRole grants"
            )
        if not LogLevel.type_check(self.log_level):
            raise ValueError(f"invalid log level: {self.log_level}")

    @property
    def metrics_enabled(self):
        return bool(
            self.send_anonymous_usage
            and self.solution_id
            and self.solution_version
            and self.solution_uuid
        )


def _env(environ, name):
    value = environ.get(name)
    if value is None or value.strip() == "":
        return None
    return value.strip()


def _env_int(environ, name, default):
    value = _env(environ, name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ValueError(f"Environment variable {name} is not an integer: {value}") from e
