"""Unit tests for command_builder module."""

from pathlib import PurePosixPath

import pytest

from pideploy.command_builder import (
    RemoteCommand,
    RemoteCommandBuilder,
    session_name_for,
)
from pideploy.run_parameters import ConfigurationError, RunParameters

DEBUG_TOKEN = "-agentlib:jdwp=transport=dt_socket,address=5005,server=y,suspend=n"


@pytest.fixture
def debug_parameters():
    return RunParameters(
        main_entry_point="com.example.Main",
        hostname="192.168.1.5",
        arguments=["--flag"],
        is_debugging=True,
        debug_port="5005",
    )


class TestRemoteCommandBuilder:
    """Tests for RemoteCommandBuilder.build."""

    def test_debug_scenario_tokens(self, debug_parameters):
        """Debug launch puts the JDWP agent between runtime and main class."""
        command = RemoteCommandBuilder.build(debug_parameters)

        assert command.tokens == ("java", DEBUG_TOKEN, "com.example.Main", "--flag")

    def test_build_is_deterministic(self, debug_parameters):
        """Same parameters always yield identical tokens."""
        first = RemoteCommandBuilder.build(debug_parameters)
        second = RemoteCommandBuilder.build(
            RunParameters(
                main_entry_point="com.example.Main",
                hostname="192.168.1.5",
                arguments=("--flag",),
                is_debugging=True,
                debug_port="5005",
            )
        )

        assert first == second
        assert first.to_shell() == second.to_shell()

    def test_no_debug_token_when_not_debugging(self):
        params = RunParameters(
            main_entry_point="com.example.Main",
            hostname="192.168.1.5",
            arguments=("a", "b"),
            debug_port="5005",
        )

        command = RemoteCommandBuilder.build(params)

        assert command.tokens == ("java", "com.example.Main", "a", "b")
        assert not any("jdwp" in token for token in command)

    @pytest.mark.parametrize("port", ["5005", "8000", "65535"])
    def test_debug_token_encodes_port(self, port):
        params = RunParameters(
            main_entry_point="Main", hostname="pi", is_debugging=True, debug_port=port
        )

        command = RemoteCommandBuilder.build(params)

        agent = [t for t in command if t.startswith("-agentlib:jdwp=")]
        assert len(agent) == 1
        assert f"address={port}" in agent[0]
        assert "server=y,suspend=n" in agent[0]

    def test_debug_port_whitespace_normalized(self):
        params = RunParameters(
            main_entry_point="Main", hostname="pi", is_debugging=True, debug_port=" 5005 "
        )

        assert RemoteCommandBuilder.build(params).tokens[1] == DEBUG_TOKEN

    def test_full_ordering(self):
        """sudo, runtime, agent, vm options, classpath, main class, arguments."""
        params = RunParameters(
            main_entry_point="com.example.Main",
            hostname="pi",
            arguments=("x",),
            is_debugging=True,
            debug_port="5005",
            classpath=("app.jar", "lib/*"),
            vm_options=("-Xmx64m",),
            runtime="/opt/jdk/bin/java",
            use_sudo=True,
        )

        command = RemoteCommandBuilder.build(params)

        assert command.tokens == (
            "sudo",
            "/opt/jdk/bin/java",
            DEBUG_TOKEN,
            "-Xmx64m",
            "-cp",
            "app.jar:lib/*",
            "com.example.Main",
            "x",
        )

    def test_arguments_keep_order(self):
        params = RunParameters(
            main_entry_point="Main", hostname="pi", arguments=("3", "1", "2")
        )

        assert RemoteCommandBuilder.build(params).tokens[-3:] == ("3", "1", "2")


class TestRemoteCommand:
    """Tests for RemoteCommand rendering."""

    def test_to_shell_quotes_tokens(self):
        command = RemoteCommand(tokens=("java", "Main", "hello world", "$HOME"))

        assert command.to_shell() == "java Main 'hello world' '$HOME'"

    def test_len_and_iter(self):
        command = RemoteCommand(tokens=("java", "Main"))

        assert len(command) == 2
        assert list(command) == ["java", "Main"]


class TestSessionName:
    """Tests for session_name_for."""

    def test_pattern(self):
        assert session_name_for("5005") == "PI Debugger (5005)"

    def test_int_port(self):
        assert session_name_for(8000) == "PI Debugger (8000)"


class TestRunParametersValidation:
    """Configuration errors are raised before anything is built."""

    def test_empty_main_entry_point(self):
        with pytest.raises(ConfigurationError, match="Main entry point"):
            RunParameters(main_entry_point="  ", hostname="pi")

    def test_empty_hostname(self):
        with pytest.raises(ConfigurationError, match="hostname"):
            RunParameters(main_entry_point="Main", hostname="")

    @pytest.mark.parametrize("port", ["", "abc", "0", "-1", "70000"])
    def test_invalid_debug_port_when_debugging(self, port):
        with pytest.raises(ConfigurationError, match="debug port"):
            RunParameters(
                main_entry_point="Main", hostname="pi", is_debugging=True, debug_port=port
            )

    def test_debug_port_not_checked_when_not_debugging(self):
        params = RunParameters(main_entry_point="Main", hostname="pi", debug_port="abc")

        assert params.is_debugging is False

    def test_working_directory_normalized(self):
        params = RunParameters(main_entry_point="Main", hostname="pi", working_directory="apps/x")

        assert params.working_directory == PurePosixPath("apps/x")

    def test_parameters_are_immutable(self):
        params = RunParameters(main_entry_point="Main", hostname="pi")

        with pytest.raises(AttributeError):
            params.hostname = "other"  # type: ignore[misc]
