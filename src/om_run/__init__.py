"""om run: execute the tasks described in a project's om/ directory."""

__version__ = "0.1.0"
