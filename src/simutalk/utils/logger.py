import logging
import os
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Optional, Union


LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(filename)s:%(lineno)d - %(message)s'


class Logger:
    """项目日志封装：文件按天轮转，控制台级别可单独设置"""

    def __init__(
        self,
        name: str = 'simutalk',
        level: int = logging.DEBUG,
        console_level: Optional[int] = logging.WARNING,
        log_dir: Optional[str] = None,
    ) -> None:
        self.log_dir = log_dir or os.environ.get(
            'SIMUTALK_LOG_DIR', str(Path.home() / '.simutalk' / 'logs')
        )
        self.file_level = level
        self.console_level = console_level if console_level is not None else level

        self.logger = logging.getLogger(name)
        self.logger.setLevel(min(self.file_level, self.console_level))
        self.logger.propagate = False

        if not self.logger.handlers:
            self._setup_handlers()

    def _setup_handlers(self) -> None:
        formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt='%Y-%m-%d %H:%M:%S')

        try:
            os.makedirs(self.log_dir, exist_ok=True)
            file_handler = TimedRotatingFileHandler(
                filename=os.path.join(self.log_dir, 'simutalk.log'),
                when='midnight',
                interval=1,
                backupCount=14,
                encoding='utf-8',
            )
        except OSError:
            # 只读文件系统等情况下退化为仅控制台输出
            file_handler = None

        if file_handler is not None:
            file_handler.setLevel(self.file_level)
            file_handler.setFormatter(formatter)
            file_handler.suffix = '%Y-%m-%d'
            self.logger.addHandler(file_handler)

        console_handler = logging.StreamHandler()
        console_handler.setLevel(self.console_level)
        console_handler.setFormatter(formatter)
        self.logger.addHandler(console_handler)

    def set_level(self, level: Union[int, str]) -> None:
        """调整控制台日志级别（例如来自 Config.log_level）"""
        if isinstance(level, str):
            level = logging.getLevelName(level.upper())
        self.console_level = level
        self.logger.setLevel(min(self.file_level, self.console_level))
        for handler in self.logger.handlers:
            if not isinstance(handler, TimedRotatingFileHandler):
                handler.setLevel(level)

    def debug(self, message: str) -> None:
        self.logger.debug(message, stacklevel=2)

    def info(self, message: str) -> None:
        self.logger.info(message, stacklevel=2)

    def warning(self, message: str) -> None:
        self.logger.warning(message, stacklevel=2)

    def error(self, message: str, exc_info: bool = False) -> None:
        self.logger.error(message, exc_info=exc_info, stacklevel=2)


logger = Logger()


def get_logger(
    name: str = 'simutalk',
    level: int = logging.DEBUG,
    console_level: Optional[int] = logging.WARNING,
    log_dir: Optional[str] = None,
) -> Logger:
    """返回具备自定义级别的日志器实例"""
    return Logger(name=name, level=level, console_level=console_level, log_dir=log_dir)
