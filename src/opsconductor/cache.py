#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#
"""Provides in-memory caching of values that expire.

## Overview

A Lambda container is reused across invocations while it stays warm. Assuming
the same task role for the same account and region on every invocation is
wasteful, so the credentials returned by STS are cached in memory for a
fraction of their lifetime.

`ExpiringValue` represents a single lazily loaded value that is cached for a
finite amount of time:

    >>> import time
    >>> ev = ExpiringValue(refresh_fn=time.ctime, max_age=10)
    >>> ev.value(); time.sleep(5); ev.value(); time.sleep(5); ev.value()
    'Sat Jul 13 15:04:30 2019'
    'Sat Jul 13 15:04:30 2019'
    'Sat Jul 13 15:04:40 2019'

`ExpiringCache` is a thread-safe collection of expiring values addressed by a
key. The `refresh_fn` passed to `ExpiringCache.get` is only called when there
is no unexpired value for the key.
"""

import logging
import threading
import time

LOG = logging.getLogger(__name__)


class ExpiringValue:
    """Represents a lazily loaded value that will expire over time.

    The constructor takes a `refresh_fn` function of zero arguments, which is
    called to obtain the value to be cached for `max_age` seconds. The value is
    not retrieved at instantiation, only the first time `value` is invoked, and
    it is not refreshed when it expires, but the next time `value` is called.
    This class is thread-safe.
    """

    def __init__(self, refresh_fn, max_age):
        self._refresh_fn = refresh_fn
        self._max_age = max_age
        self._lock = threading.Lock()
        self._value = None
        self._expiry = 0

    def value(self, refresh=False):
        """Returns the value, refreshing it first if expired or `refresh` is set."""
        with self._lock:
            if not refresh and not self.is_expired():
                LOG.debug("returning cached value")
                return self._value

            self._value = self._refresh_fn()
            self._expiry = time.time() + self._max_age
            LOG.debug("refreshed value, expires in %ss", self._max_age)
            return self._value

    def is_expired(self):
        """Returns `True` if the value must be refreshed on the next access."""
        return time.time() >= self._expiry


class ExpiringCache:
    """A thread-safe mapping of keys to `ExpiringValue` objects.

    Each value is cached for `max_age` seconds from the time it was loaded.
    """

    def __init__(self, max_age):
        self._max_age = max_age
        self._values = {}
        self._lock = threading.Lock()

    def get(self, key, refresh_fn):
        """Returns the cached value for `key`, loading it with `refresh_fn`.

        Concurrent callers asking for the same key wait on the same
        `ExpiringValue`, so `refresh_fn` is invoked at most once per expiry.
        """
        with self._lock:
            ev = self._values.setdefault(key, ExpiringValue(refresh_fn, self._max_age))
        return ev.value()

    def invalidate(self, key):
        """Discards the cached value for `key` if present."""
        with self._lock:
            self._values.pop(key, None)

    def __len__(self):
        with self._lock:
            return len(self._values)
