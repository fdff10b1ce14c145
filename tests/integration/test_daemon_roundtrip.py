"""Integration tests: calls through a real RPyC connection to a daemon.

The daemon service runs in a background thread of the test process, so these
tests need no subprocess; the registry adopts it as an already-running daemon.
"""

import threading
import time

import numpy as np
import pytest

from pycall_daemon.daemon.registry import ServerRegistry, ServerState
from pycall_daemon.dispatcher import Dispatcher
from pycall_daemon.errors import (
    AbortedOnShutdown,
    InvocationError,
    ServerUnreachable,
    UndefinedReference,
)


@pytest.fixture
def call(in_process_daemon, registry, make_options, free_port):
    """Run one call against the in-process daemon."""
    dispatcher = Dispatcher(registry)

    def _call(f="", args=(), kwargs=None, **options):
        return dispatcher.call(make_options(f=f, port=free_port, **options), list(args), kwargs or {})

    return _call


class TestRoundTrip:
    """Values travel through payload, daemon and conversion unchanged."""

    @pytest.mark.parametrize(
        "value",
        [42, -1.5, "text", True, [1, [2, "three"]], {"a": 1, "b": {"c": [None]}}],
    )
    def test_identity(self, call, value):
        assert call("lambda x: x", [value]) == [value]

    def test_array_identity(self, call):
        array = np.linspace(0, 1, 12).reshape(3, 4)

        (result,) = call("lambda x: x", [array])

        assert result.dtype == array.dtype
        np.testing.assert_array_equal(result, array)

    def test_keyword_arguments(self, call):
        assert call("sorted", [[2, 3, 1]], {"reverse": True}) == [[3, 2, 1]]

    def test_no_value_function_gives_zero_slots(self, call):
        assert call("", [1, 2, 3]) == []
        assert call("lambda: None") == []

    def test_three_tuple_gives_three_slots(self, call):
        assert call("lambda: (1, 'b', [3.0])") == [1, "b", [3.0]]

    def test_modules(self, call):
        assert call("numpy.linalg.norm", [[3.0, 4.0]], modules=["numpy.linalg"]) == [5.0]

    def test_symbols_become_names(self, call, tmp_path):
        setup = tmp_path / "setup.py"
        setup.write_text("import enum\nclass Mode(enum.Enum):\n    FAST = 1\n")

        assert call("lambda: Mode.FAST", setup=setup) == ["FAST"]


class TestNamespaces:
    """Shared versus isolated evaluation."""

    def test_shared_namespace_retains_setup_symbols(self, call, tmp_path):
        setup = tmp_path / "setup.py"
        setup.write_text("def greet(name):\n    return f'hi {name}'\n")

        call(setup=setup, shared=True)

        assert call("greet", ["ann"], shared=True) == ["hi ann"]

    def test_isolated_call_does_not_see_setup_symbols(self, call, tmp_path):
        setup = tmp_path / "setup.py"
        setup.write_text("def greet(name):\n    return f'hi {name}'\n")

        call(setup=setup, shared=True)

        with pytest.raises(UndefinedReference):
            call("greet", ["ann"], shared=False)

    def test_isolated_setup_does_not_leak_into_shared(self, call, tmp_path):
        setup = tmp_path / "setup.py"
        setup.write_text("leaky = lambda: 'leaked'\n")

        call(setup=setup, shared=False)

        with pytest.raises(UndefinedReference):
            call("leaky", shared=True)

    def test_converters_registered_in_setup_persist(self, call, tmp_path):
        setup = tmp_path / "setup.py"
        setup.write_text("converters.register(complex, lambda c: {'re': c.real, 'im': c.imag})\n")

        call(setup=setup)

        assert call("lambda: 2 - 1j") == [{"re": 2.0, "im": -1.0}]

    def test_expression_mode_defines_for_later_calls(self, call):
        assert call("import math\nradius = 2.0", nofun=True) == []

        assert call("lambda: math.pi * radius ** 2") == [pytest.approx(12.566, rel=1e-3)]


class TestFailures:
    """Remote failures reach the caller as the same error class."""

    def test_unresolvable_reference(self, call):
        with pytest.raises(UndefinedReference):
            call("this_name_does_not_exist")

    def test_remote_exception_keeps_details(self, call):
        with pytest.raises(InvocationError) as exc_info:
            call("lambda: {}['missing']")

        assert exc_info.value.remote_type == "KeyError"
        assert "missing" in exc_info.value.remote_traceback

    def test_daemon_survives_failures(self, call, in_process_daemon):
        with pytest.raises(InvocationError):
            call("lambda: 1 / 0")

        assert call("abs", [-3]) == [3]
        assert in_process_daemon.calls_failed == 1
        assert in_process_daemon.calls_served == 2


class TestLifecycle:
    """Registry interaction with a live daemon."""

    def test_live_daemon_is_adopted(self, in_process_daemon, registry, free_port):
        handle = registry.start(free_port)

        assert handle.state is ServerState.READY
        assert not handle.owned

    def test_start_on_ready_handle_does_not_relaunch(self, in_process_daemon, registry, free_port):
        first = registry.start(free_port)
        second = registry.start(free_port)

        assert first is second
        assert second.process is None

    def test_status(self, in_process_daemon, registry, free_port, call):
        call("len", ["abc"])

        status = registry.status(free_port)

        assert status["port"] == free_port
        assert status["calls_served"] == 1

    def test_shutdown_twice(self, in_process_daemon, registry, free_port):
        registry.start(free_port)

        registry.shutdown(free_port)
        registry.shutdown(free_port)

        assert registry.state(free_port) is ServerState.ABSENT

    def test_dispatch_after_shutdown(self, in_process_daemon, registry, free_port, make_options):
        registry.start(free_port)
        registry.shutdown(free_port)

        with pytest.raises(ServerUnreachable):
            registry.dispatch(free_port, make_options(f="len", port=free_port))

    def test_shutdown_aborts_in_flight_call(
        self, in_process_daemon, daemon_config, free_port, make_options
    ):
        caller = ServerRegistry(daemon_config)
        caller.start(free_port)
        options = make_options(f="time.sleep", modules=["time"], port=free_port)
        options.infile.write_text('{"args": [3], "kwargs": {}}')
        errors = []

        def run():
            try:
                caller.dispatch(free_port, options)
            except AbortedOnShutdown as e:
                errors.append(e)

        worker = threading.Thread(target=run)
        worker.start()
        time.sleep(0.5)
        ServerRegistry(daemon_config).shutdown(free_port)
        worker.join(timeout=10)

        assert len(errors) == 1
        assert caller.state(free_port) is ServerState.ABSENT
