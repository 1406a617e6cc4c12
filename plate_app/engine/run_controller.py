import logging
from typing import Callable, Iterable, Optional

from plate_app.engine.plugin_api import BatchResult

logger = logging.getLogger(__name__)


class BatchRunner:
    """Run the plugin stages in order for one batch of plate files."""

    def __init__(
        self,
        plugin,
        raw_paths: Iterable[str],
        identifier_paths: Iterable[str],
        recipe,
        *,
        on_progress: Optional[Callable[[int], None]] = None,
        on_message: Optional[Callable[[str], None]] = None,
    ):
        self.plugin = plugin
        self.raw_paths, self.identifier_paths = list(raw_paths), list(identifier_paths)
        self.recipe = recipe
        self._on_progress = on_progress
        self._on_message = on_message

    def run(self) -> BatchResult:
        self._emit_message("Loading plates...")
        measurements, identifiers = self.plugin.load(self.raw_paths, self.identifier_paths, self.recipe)
        self._emit_progress(10)

        self._emit_message("Validating recipe...")
        errs = self.plugin.validate(measurements, identifiers, self.recipe)
        if errs:
            raise RuntimeError("; ".join(errs))
        self._emit_progress(20)

        self._emit_message("Joining identifiers...")
        records = self.plugin.preprocess(measurements, identifiers, self.recipe)
        self._emit_progress(40)

        self._emit_message("Calibrating plates...")
        records, qc = self.plugin.analyze(records, self.recipe)
        self._emit_progress(70)

        self._emit_message("Exporting results...")
        result = self.plugin.export(records, qc, self.recipe)
        self._emit_progress(100)
        return result

    def _emit_progress(self, value: int):
        if self._on_progress is not None:
            self._on_progress(value)

    def _emit_message(self, message: str):
        logger.info(message)
        if self._on_message is not None:
            self._on_message(message)
