"""Minimal execution driver for code that talks over comms.

Code runs in a namespace that receives the comm API by injection, so
existing cells can call ``Comm(...)`` and ``register_target(...)``
without any module being patched.
"""

import ast
import platform
from collections.abc import Mapping

from kernelcomm.errors import ExecutionError
from kernelcomm.manager import CommManager
from kernelcomm.transport import PROTOCOL_VERSION

IMPLEMENTATION: str = "kernelcomm"
IMPLEMENTATION_VERSION: str = "0.1.0"


def _split_trailing_expression(tree: ast.Module) -> tuple[ast.Module, ast.Expression | None]:
    """Separate a trailing expression statement from the rest of a cell.

    :param tree: Parsed cell.
    :returns: Tuple of ``(statements, trailing_expression)``.
    """
    body: list[ast.stmt] = list(tree.body)
    if len(body) == 0:
        return tree, None
    last: ast.stmt = body[-1]
    if isinstance(last, ast.Expr) is False:
        return tree, None

    statements: ast.Module = ast.Module(body=body[:-1], type_ignores=[])
    expression: ast.Expression = ast.Expression(body=last.value)  # type: ignore[attr-defined]
    return statements, expression


class Interpreter:
    """Execute code cells under the runtime lock of a comm manager."""

    _manager: CommManager
    _namespace: dict[str, object]
    _execution_count: int

    def __init__(self, manager: CommManager, namespace: dict[str, object] | None = None) -> None:
        """Initialize an interpreter.

        :param manager: Comm manager whose lock and error sink are used.
        :param namespace: Optional user namespace to execute in.
        """
        self._manager = manager
        if namespace is None:
            namespace = {}
        namespace.setdefault("__name__", "__main__")
        namespace["Comm"] = manager.new_comm
        namespace["comm_manager"] = manager
        namespace["register_target"] = manager.register_target
        self._namespace = namespace
        self._execution_count = 0

    @property
    def namespace(self) -> dict[str, object]:
        """Return the user namespace."""
        return self._namespace

    @property
    def execution_count(self) -> int:
        """Return the number of executed cells."""
        return self._execution_count

    def execute(
        self,
        code: str,
        silent: bool = False,
        parent_header: Mapping[str, object] | None = None,
    ) -> dict[str, object]:
        """Execute one cell.

        :param code: Source code.
        :param silent: When ``True``, errors are not reported to the error sink.
        :param parent_header: Header of the ``execute_request`` being served.
        :returns: ``execute_reply`` content.
        """
        with self._manager.lock:
            self._execution_count += 1
            execution_count: int = self._execution_count
            reply: dict[str, object] = {
                "status": "ok",
                "execution_count": execution_count,
                "payload": [],
                "user_expressions": {},
            }
            try:
                with self._manager.parent(parent_header):
                    value: object = self._run_cell(code)
            except Exception as exc:
                report: ExecutionError = ExecutionError.from_exception(
                    exc,
                    self._manager.settings.report_traceback_lines,
                )
                if silent is False:
                    self._manager.bridge.report_error(report)
                reply["status"] = "error"
                reply.update(report.to_content())
                return reply

            if value is not None:
                reply["data"] = {"text/plain": repr(value)}
            return reply

    def _run_cell(self, code: str) -> object:
        """Compile and run a cell, returning its trailing expression value.

        :param code: Source code.
        :returns: Value of a trailing expression, otherwise ``None``.
        """
        tree: ast.Module = ast.parse(code, filename="<cell>", mode="exec")
        statements, expression = _split_trailing_expression(tree)
        compiled_statements = compile(statements, "<cell>", "exec")
        exec(compiled_statements, self._namespace)
        if expression is None:
            return None
        compiled_expression = compile(expression, "<cell>", "eval")
        return eval(compiled_expression, self._namespace)

    def kernel_info(self) -> dict[str, object]:
        """Build the ``kernel_info_reply`` content.

        :returns: Implementation and language information.
        """
        return {
            "status": "ok",
            "protocol_version": PROTOCOL_VERSION,
            "implementation": IMPLEMENTATION,
            "implementation_version": IMPLEMENTATION_VERSION,
            "banner": f"{IMPLEMENTATION} {IMPLEMENTATION_VERSION} (Python {platform.python_version()})",
            "language_info": {
                "name": "python",
                "version": platform.python_version(),
                "mimetype": "text/x-python",
                "file_extension": ".py",
            },
        }
