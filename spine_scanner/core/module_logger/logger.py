import logging
import os

from pathlib                      import Path
from spine_scanner.core.utils     import Utils

class ModuleLogger:
    """
    Configures and manages logging for Spine Scanner modules.
    """
    LOGS_DIR      = Utils.PACKAGE_ROOT / 'logs'
    LOG_FORMAT    = '%(asctime)s - %(levelname)s - %(message)s'
    DEFAULT_LEVEL = 'INFO'

    def __init__(self, module_name: str):
        """
        Initialize logger configuration for a specific module.

        Args:
            module_name : Name of the module requesting the logger
        """
        self.logger   = logging.getLogger(f'spine_scanner.{module_name}')
        self.logs_dir = Path(os.environ.get('SPINE_SCANNER_LOG_DIR', self.LOGS_DIR))
        self.log_file = self.logs_dir / f'{module_name}.log'
        self.level    = os.environ.get('SPINE_SCANNER_LOG_LEVEL', self.DEFAULT_LEVEL).upper()

        self.configure_logger()

    def configure_logger(self):
        """
        Sets up logger with file handler if not already configured.
        """
        if not self.logger.handlers:

            self.logger.setLevel(getattr(logging, self.level, logging.INFO))
            self.logs_dir.mkdir(parents = True, exist_ok = True)

            handler = logging.FileHandler(self.log_file, mode = 'a')
            handler.setFormatter(logging.Formatter(self.LOG_FORMAT))

            self.logger.addHandler(handler)
            self.logger.propagate = False

    def __call__(self) -> logging.Logger:
        """
        Returns the configured logger instance.
        """
        return self.logger
