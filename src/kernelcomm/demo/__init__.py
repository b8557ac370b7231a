"""Demo comm targets for showcasing kernelcomm behavior."""

from kernelcomm.demo.echo import ECHO_TARGET
from kernelcomm.demo.echo import INCREMENT_TARGET
from kernelcomm.demo.echo import echo_target
from kernelcomm.demo.echo import increment_target

__all__: list[str] = ["ECHO_TARGET", "INCREMENT_TARGET", "echo_target", "increment_target"]
