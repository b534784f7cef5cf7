import inspect
import json
import logging
import os
from logging.handlers import TimedRotatingFileHandler


def _level_from_env(default: int) -> int:
    """PROTOTAP_LOG_LEVEL 可覆盖控制台级别（DEBUG/INFO/WARNING/ERROR）"""
    raw = os.getenv("PROTOTAP_LOG_LEVEL", "").strip().upper()
    if not raw:
        return default
    value = logging.getLevelName(raw)
    return value if isinstance(value, int) else default


class BaseLogger:
    """
    基础日志类：
    - 控制台 + 按天轮转文件输出
    - 自动推断调用类名作为 logger 名
    - 统一格式化输出（含时间、文件名、函数、线程）
    - log_event 输出单行 JSON，便于 collector / grep 检索
    """

    def __init__(
        self,
        name: str | None = None,
        level: int = logging.INFO,
        to_file: bool = False,
        file_path: str | None = None,
        file_level: int = logging.ERROR,
    ):
        """
        初始化日志系统。

        :param name: logger 名称（默认取调用者类名）
        :param level: 控制台日志级别（默认 INFO，可被 PROTOTAP_LOG_LEVEL 覆盖）
        :param to_file: 是否启用文件日志
        :param file_path: 日志文件路径（可选，默认 logs/<name>.log）
        :param file_level: 文件日志的最低级别（默认 ERROR，仅错误写入）
        """
        if name is None:
            name = self._get_caller_class_name() or self.__class__.__name__

        level = _level_from_env(level)
        self.logger = logging.getLogger(name)
        self.logger.setLevel(level)
        self.logger.propagate = False  # 防止重复输出

        # 同名 logger 只配置一次 handler
        if not self.logger.handlers:
            formatter = logging.Formatter(
                "%(asctime)s | %(name)s | %(levelname)s | "
                "[%(filename)s:%(lineno)d %(funcName)s] | %(message)s"
            )

            ch = logging.StreamHandler()
            ch.setLevel(level)
            ch.setFormatter(formatter)
            self.logger.addHandler(ch)

            if to_file:
                if file_path is None:
                    log_dir = os.getenv("PROTOTAP_LOG_DIR") or os.path.join(
                        os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "logs"
                    )
                    os.makedirs(log_dir, exist_ok=True)
                    file_path = os.path.join(log_dir, f"{self.logger.name}.log")

                fh = TimedRotatingFileHandler(
                    filename=file_path,
                    when="midnight",
                    interval=1,
                    backupCount=7,
                    encoding="utf-8",
                )
                fh.setLevel(file_level)
                fh.setFormatter(formatter)
                self.logger.addHandler(fh)

    # ------------------ 内部方法 ------------------

    def _get_caller_class_name(self) -> str | None:
        """获取调用者类名（跳过 BaseLogger 自身），例如 RelayForwarder -> 'RelayForwarder'"""
        for frame_record in inspect.stack():
            instance = frame_record.frame.f_locals.get("self")
            if instance and instance.__class__ != self.__class__:
                return instance.__class__.__name__
        return None

    # ------------------ 对外日志接口 ------------------

    def log_info(self, message: str, exc_info: bool = False):
        """记录 INFO 日志"""
        self.logger.info(message, exc_info=exc_info, stacklevel=2)

    def log_warning(self, message: str, exc_info: bool = False):
        """记录 WARNING 日志"""
        self.logger.warning(message, exc_info=exc_info, stacklevel=2)

    def log_error(self, message: str, exc_info: bool = True):
        """记录 ERROR 日志（默认包含异常堆栈）"""
        self.logger.error(message, exc_info=exc_info, stacklevel=2)

    def log_debug(self, message: str, exc_info: bool = False):
        """记录 DEBUG 日志"""
        self.logger.debug(message, exc_info=exc_info, stacklevel=2)

    def log_event(self, msg: str, level: int = logging.INFO, **fields):
        """
        结构化单行日志：{"msg": ..., **fields}
        与旧版 print(json.dumps({...})) 的输出保持同一形状。
        """
        if not self.logger.isEnabledFor(level):
            return
        line = json.dumps({"msg": msg, **fields}, ensure_ascii=False, default=str)
        self.logger.log(level, line, stacklevel=2)
