"""
Subprocess invocation of driver modules.

Command lines::

    <bin> backup <name> <jsonArgs>
    <bin> restore <name> <artifactPath> <jsonArgs>

``jsonArgs`` is ``{"path": <staging dir>, "Glaciermode": <bool>, "<type>": <params>}``.

Two stdout transports are supported, selected by the manifest's ``output``:

- ``structured``: stdout is one JSON document ``{"logs": {...}, "result": ...}``
  read after the process exits.
- ``streamed``: stdout lines are logged as they arrive; the result is the last
  line that parses as a JSON object tagged ``"event": "result"``.

A non-zero exit status always fails the invocation.
"""

import json
import logging
import subprocess
import threading
from typing import Any, Dict, List, Optional, Tuple

from ..errors import DriverError
from ..models import BackupDefinition, PluginResult
from .modules import Module, ModuleRegistry


logger = logging.getLogger(__name__)

RESULT_EVENT = 'result'

LOG_LEVELS = {
    'debug': logging.DEBUG,
    'info': logging.INFO,
    'warn': logging.WARNING,
    'warning': logging.WARNING,
    'error': logging.ERROR,
    'fatal': logging.CRITICAL,
    'critical': logging.CRITICAL
}


def module_logger(module: Module) -> logging.Logger:
    """Logger receiving a driver's output."""
    return logging.getLogger(f'minibackup.modules.{module.name}')


class PluginInvoker:
    """Runs driver modules resolved from a registry."""

    def __init__(self, registry: ModuleRegistry):
        self.registry = registry

    @staticmethod
    def build_args(definition: BackupDefinition, glacier_mode: bool = False) -> str:
        """
        Serialize the JSON argument handed to the driver.

        Args:
            definition: Backup definition being run
            glacier_mode: Whether the run targets the glacier tier

        Returns:
            JSON string
        """
        return json.dumps({
            'path': definition.local_path,
            'Glaciermode': glacier_mode,
            definition.type.lower(): definition.params.to_args()
        })

    def backup(self, definition: BackupDefinition, glacier_mode: bool = False) -> PluginResult:
        """
        Ask the driver to produce raw artifacts.

        Returns:
            PluginResult with at least one artifact path

        Raises:
            ConfigurationError: If no module handles the definition's type
            DriverError: If the driver fails or reports no artifact
        """
        module = self.registry.get(definition.type)
        args = self.build_args(definition, glacier_mode)
        logger.info(f"Invoking {module.name} backup for {definition.name}")

        value, logs = self._run(module, ['backup', definition.name, args])

        if isinstance(value, str):
            value = [value]
        if (
            not isinstance(value, list)
            or not value
            or not all(isinstance(p, str) and p for p in value)
        ):
            raise DriverError(
                f"Module {module.name} returned no artifact path for {definition.name}"
            )

        return PluginResult(paths=value, logs=logs)

    def restore(self, definition: BackupDefinition, artifact_path: str) -> PluginResult:
        """
        Hand a retrieved artifact to the driver.

        Raises:
            ConfigurationError: If no module handles the definition's type
            DriverError: If the driver fails or reports an unsuccessful restore
        """
        module = self.registry.get(definition.type)
        args = self.build_args(definition, False)
        logger.info(f"Invoking {module.name} restore for {definition.name} with {artifact_path}")

        value, logs = self._run(module, ['restore', definition.name, artifact_path, args])

        if value is not True:
            raise DriverError(f"Module {module.name} reported a failed restore for {definition.name}")

        return PluginResult(success=True, logs=logs)

    def _run(self, module: Module, argv: List[str]) -> Tuple[Any, Dict[str, List[str]]]:
        """
        Run the driver and extract its declared result.

        Returns:
            (result value, logs by severity)

        Raises:
            DriverError: On spawn failure, non-zero exit or missing/malformed result
        """
        driver_logger = module_logger(module)
        command = [module.bin_path] + argv

        try:
            process = subprocess.Popen(
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                # Driver output is not guaranteed to be valid UTF-8
                encoding='utf-8',
                errors='replace',
                bufsize=1
            )
        except OSError as e:
            raise DriverError(f"Failed to start module {module.name} ({module.bin_path}): {e}")

        collector = _StdoutCollector(driver_logger, module.streamed)
        readers = [
            threading.Thread(target=collector.consume, args=(process.stdout,), daemon=True),
            threading.Thread(target=_drain_stderr, args=(process.stderr, driver_logger), daemon=True)
        ]
        for reader in readers:
            reader.start()

        returncode = process.wait()
        for reader in readers:
            reader.join()

        if returncode != 0:
            raise DriverError(f"Module {module.name} exited with code {returncode}")

        if module.streamed:
            record = collector.result_record
            if record is None:
                raise DriverError(f"Module {module.name} did not emit a result record")
        else:
            record = _parse_document(module, collector.text())

        logs = _normalize_logs(module, record.get('logs'))
        _emit_logs(driver_logger, logs)

        if 'result' not in record:
            raise DriverError(f"Module {module.name} output has no 'result' field")
        return record['result'], logs


class _StdoutCollector:
    """Reads driver stdout line by line."""

    def __init__(self, driver_logger: logging.Logger, streamed: bool):
        self.driver_logger = driver_logger
        self.streamed = streamed
        self.lines: List[str] = []
        self.result_record: Optional[Dict[str, Any]] = None

    def consume(self, stream):
        with stream:
            for line in stream:
                line = line.rstrip('\n')
                if not self.streamed:
                    self.lines.append(line)
                    continue

                record = _parse_result_line(line)
                if record is not None:
                    self.result_record = record
                elif line:
                    self.driver_logger.info(line)

    def text(self) -> str:
        return '\n'.join(self.lines)


def _drain_stderr(stream, driver_logger: logging.Logger):
    with stream:
        for line in stream:
            line = line.rstrip('\n')
            if line:
                driver_logger.warning(line)


def _parse_result_line(line: str) -> Optional[Dict[str, Any]]:
    stripped = line.strip()
    if not stripped.startswith('{'):
        return None
    try:
        record = json.loads(stripped)
    except ValueError:
        return None
    if isinstance(record, dict) and record.get('event') == RESULT_EVENT:
        return record
    return None


def _parse_document(module: Module, text: str) -> Dict[str, Any]:
    if not text.strip():
        raise DriverError(f"Module {module.name} produced no output")
    try:
        document = json.loads(text)
    except ValueError as e:
        raise DriverError(f"Module {module.name} produced malformed output: {e}")
    if not isinstance(document, dict):
        raise DriverError(f"Module {module.name} output must be a JSON object")
    return document


def _normalize_logs(module: Module, raw: Any) -> Dict[str, List[str]]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise DriverError(f"Module {module.name} 'logs' must be an object")

    logs = {}
    for severity, messages in raw.items():
        if isinstance(messages, str):
            messages = [messages]
        elif not isinstance(messages, list):
            messages = [str(messages)]
        logs[str(severity)] = [str(m) for m in messages]
    return logs


def _emit_logs(driver_logger: logging.Logger, logs: Dict[str, List[str]]):
    for severity, messages in logs.items():
        level = LOG_LEVELS.get(severity.lower(), logging.INFO)
        for message in messages:
            driver_logger.log(level, message)
