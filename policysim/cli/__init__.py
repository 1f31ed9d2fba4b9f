"""CLI module for the policy move simulator.

This package provides the command-line interface for running a simulation,
layering configuration sources and mapping the verdict to exit codes.
"""

from .runner import (
    # Exit codes
    ExitCode,

    # Main CLI runner
    SimulationRunner,
    run_simulation,
)

from .config import (
    # Configuration
    ConfigurationError,
    SimulatorConfiguration,
    load_configuration,
)

__all__ = [
    # Exit codes
    'ExitCode',

    # Main CLI runner
    'SimulationRunner',
    'run_simulation',

    # Configuration
    'ConfigurationError',
    'SimulatorConfiguration',
    'load_configuration',
]
