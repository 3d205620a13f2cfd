import logging
import sys
import os
from logging.handlers import RotatingFileHandler

from bookstore.utils.settings import settings

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(log_dir: str = None, level: str = None) -> logging.Logger:
    """配置 bookstore 根日志记录器（控制台 + 滚动文件）"""
    log_dir = log_dir or settings.log_dir
    level = getattr(logging, (level or settings.log_level).upper(), logging.INFO)

    logger = logging.getLogger('bookstore')
    logger.setLevel(level)

    # 确保日志目录存在
    if not os.path.exists(log_dir):
        os.makedirs(log_dir)

    # 创建控制台处理器
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT))

    # 创建文件处理器
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'app.log'),
        maxBytes=10*1024*1024,  # 10MB
        backupCount=5,
        encoding='utf-8'
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))

    # 清除现有的处理器
    for handler in logger.handlers:
        handler.close()
    logger.handlers = []

    logger.addHandler(console_handler)
    logger.addHandler(file_handler)

    # 防止日志重复
    logger.propagate = False
    return logger
