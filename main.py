#!/usr/bin/env python
# -*- coding: utf-8 -*-

"""
S3桶迁移工具
将源S3桶中目标桶尚不存在的对象复制过去，并输出每个对象的迁移结果
源桶和目标桶可以位于不同账号、不同区域
"""

import os
import sys
import logging
import argparse
import configparser
from typing import Dict, List, Optional

from migrator import (
    ConfigurationError,
    MigrationError,
    MigrationOutcome,
    MigrationRequest,
    MigrationStatus,
    run_migration,
    summarize,
)
from storage_client import (
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_PART_SIZE,
    DEFAULT_REGION,
    StorageEndpointConfig,
)

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# S3要求除最后一块外每块至少5MB
MIN_PART_SIZE = 5 * 1024 * 1024

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_OBJECT_ERRORS = 2
EXIT_INTERRUPTED = 130

# 环境变量名，与配置项一一对应
ENV_VARS = {
    "source_bucket": "SOURCE_BUCKET",
    "source_region": "SOURCE_AWS_REGION",
    "source_access_key": "SOURCE_AWS_ACCESS_KEY_ID",
    "source_secret_key": "SOURCE_AWS_SECRET_ACCESS_KEY",
    "source_endpoint": "SOURCE_S3_ENDPOINT",
    "destination_bucket": "DESTINATION_BUCKET",
    "destination_region": "DESTINATION_AWS_REGION",
    "destination_access_key": "DESTINATION_AWS_ACCESS_KEY_ID",
    "destination_secret_key": "DESTINATION_AWS_SECRET_ACCESS_KEY",
    "destination_endpoint": "DESTINATION_S3_ENDPOINT",
}

REQUIRED_SETTINGS = [
    "source_bucket",
    "destination_bucket",
    "source_access_key",
    "source_secret_key",
    "destination_access_key",
    "destination_secret_key",
]


def setup_logging(debug: bool = False, log_file: Optional[str] = None) -> None:
    """配置日志输出"""
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding='utf-8'))
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format=LOG_FORMAT,
        handlers=handlers
    )
    # botocore的调试日志过多
    logging.getLogger('botocore').setLevel(logging.WARNING)
    logging.getLogger('aiobotocore').setLevel(logging.WARNING)


def load_config(config_file: str) -> Optional[Dict]:
    """
    从配置文件加载配置

    Args:
        config_file: 配置文件路径

    Returns:
        配置字典，只包含文件中出现的配置项；文件不存在或无法解析时返回None
    """
    if not os.path.exists(config_file):
        logger.error(f"配置文件 {config_file} 不存在")
        return None

    config = configparser.ConfigParser()
    try:
        with open(config_file, 'r', encoding='utf-8') as f:
            config.read_file(f)
    except (OSError, UnicodeDecodeError, configparser.Error) as e:
        logger.error(f"读取配置文件时出错: {str(e)}")
        return None

    result = {}
    for side in ("source", "destination"):
        if side not in config:
            continue
        section = config[side]
        for option, name in (
            ("bucket", f"{side}_bucket"),
            ("region", f"{side}_region"),
            ("access_key", f"{side}_access_key"),
            ("secret_key", f"{side}_secret_key"),
            ("endpoint", f"{side}_endpoint"),
        ):
            if option in section:
                result[name] = section.get(option).strip()

    if "migration" in config:
        migration = config["migration"]
        try:
            if "part_size" in migration:
                result["part_size"] = migration.getint("part_size")
            if "max_concurrency" in migration:
                result["max_concurrency"] = migration.getint("max_concurrency")
        except ValueError as e:
            logger.error(f"配置文件中的数值无效: {str(e)}")
            return None

    logger.info(f"成功读取配置文件: {config_file}")
    return result


def load_env_config(environ=None) -> Dict:
    """从环境变量读取配置"""
    environ = os.environ if environ is None else environ
    return {name: environ[var] for name, var in ENV_VARS.items() if environ.get(var)}


def resolve_settings(args: argparse.Namespace, file_config: Dict, env_config: Dict) -> Dict:
    """
    合并配置，优先级：命令行参数 > 配置文件 > 环境变量

    Raises:
        ConfigurationError: 缺少必要配置或配置值不合法
    """
    settings = {}
    for name in list(ENV_VARS) + ["part_size", "max_concurrency"]:
        value = getattr(args, name, None)
        if value is None:
            value = file_config.get(name)
        if value is None:
            value = env_config.get(name)
        settings[name] = value

    missing = [name.replace('_', '-') for name in REQUIRED_SETTINGS if not settings.get(name)]
    if missing:
        raise ConfigurationError(f"Missing required settings: {', '.join(missing)}")

    settings["source_region"] = settings["source_region"] or DEFAULT_REGION
    settings["destination_region"] = settings["destination_region"] or DEFAULT_REGION
    if settings["part_size"] is None:
        settings["part_size"] = DEFAULT_PART_SIZE
    if settings["max_concurrency"] is None:
        settings["max_concurrency"] = DEFAULT_MAX_CONCURRENCY

    if settings["part_size"] < MIN_PART_SIZE:
        raise ConfigurationError(f"part-size must be at least {MIN_PART_SIZE} bytes")
    if settings["max_concurrency"] < 1:
        raise ConfigurationError("max-concurrency must be at least 1")

    return settings


def build_request(settings: Dict) -> MigrationRequest:
    """根据合并后的配置构建迁移请求"""
    return MigrationRequest(
        source_bucket=settings["source_bucket"],
        destination_bucket=settings["destination_bucket"],
        source_config=StorageEndpointConfig(
            region=settings["source_region"],
            access_key_id=settings["source_access_key"],
            secret_access_key=settings["source_secret_key"],
            endpoint_url=settings.get("source_endpoint")
        ),
        destination_config=StorageEndpointConfig(
            region=settings["destination_region"],
            access_key_id=settings["destination_access_key"],
            secret_access_key=settings["destination_secret_key"],
            endpoint_url=settings.get("destination_endpoint")
        )
    )


def format_size(size_bytes: int) -> str:
    """格式化字节大小为人类可读格式"""
    if size_bytes == 0:
        return "0B"
    size_names = ("B", "KB", "MB", "GB", "TB", "PB")
    i = 0
    size = float(size_bytes)
    while size >= 1024 and i < len(size_names) - 1:
        size /= 1024
        i += 1
    return f"{round(size, 2)} {size_names[i]}"


def log_summary(outcomes: List[MigrationOutcome]) -> None:
    """输出迁移结果摘要"""
    summary = summarize(outcomes)
    logger.info("迁移结果摘要:")
    logger.info(f"  总计: {summary.total}")
    logger.info(f"  复制: {summary.copied} ({format_size(summary.bytes_copied)})")
    logger.info(f"  跳过: {summary.skipped}")
    logger.info(f"  失败: {summary.errors}")

    failed = [o for o in outcomes if o.status is MigrationStatus.ERROR]
    if failed:
        if len(failed) <= 10:
            logger.warning(f"失败的对象: {', '.join(o.key for o in failed)}")
        else:
            logger.warning(f"失败的前10个对象: {', '.join(o.key for o in failed[:10])}...")


def write_failed_report(outcomes: List[MigrationOutcome], report_file: str) -> int:
    """
    将失败对象写入文件，每行"键<TAB>错误信息"

    Returns:
        写入的行数
    """
    failed = [o for o in outcomes if o.status is MigrationStatus.ERROR]
    with open(report_file, 'w', encoding='utf-8') as f:
        for outcome in failed:
            f.write(f"{outcome.key}\t{outcome.error}\n")
    return len(failed)


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """解析命令行参数"""
    parser = argparse.ArgumentParser(description='S3存储桶迁移工具')

    # 配置文件选项
    parser.add_argument('--config', help='配置文件路径')

    # 源配置
    parser.add_argument('--source-bucket', help='源桶名称')
    parser.add_argument('--source-region', help=f'源桶区域 (默认: {DEFAULT_REGION})')
    parser.add_argument('--source-access-key', help='源S3访问密钥')
    parser.add_argument('--source-secret-key', help='源S3秘密密钥')
    parser.add_argument('--source-endpoint', help='源S3端点URL（兼容S3的其他存储）')

    # 目标配置
    parser.add_argument('--destination-bucket', help='目标桶名称')
    parser.add_argument('--destination-region', help=f'目标桶区域 (默认: {DEFAULT_REGION})')
    parser.add_argument('--destination-access-key', help='目标S3访问密钥')
    parser.add_argument('--destination-secret-key', help='目标S3秘密密钥')
    parser.add_argument('--destination-endpoint', help='目标S3端点URL（兼容S3的其他存储）')

    # 迁移配置
    parser.add_argument('--part-size', type=int, help='分块上传大小，单位字节 (默认: 5MB)')
    parser.add_argument('--max-concurrency', type=int,
                        help=f'单个对象同时上传的分块数 (默认: {DEFAULT_MAX_CONCURRENCY})')
    parser.add_argument('--failed-report', help='将失败对象列表写入该文件')

    # 日志
    parser.add_argument('--debug', action='store_true', help='输出调试日志')
    parser.add_argument('--log-file', help='同时写入日志文件')

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """主函数，返回退出码"""
    args = parse_arguments(argv)
    setup_logging(args.debug, args.log_file)

    file_config = {}
    if args.config:
        file_config = load_config(args.config)
        if file_config is None:
            logger.error("配置加载失败，退出程序")
            return EXIT_FAILURE

    try:
        settings = resolve_settings(args, file_config, load_env_config())
    except ConfigurationError as e:
        logger.error(f"配置错误: {str(e)}")
        logger.error("请通过命令行参数、配置文件或环境变量提供这些配置")
        return EXIT_FAILURE

    request = build_request(settings)

    try:
        outcomes = run_migration(
            request,
            part_size=settings["part_size"],
            max_concurrency=settings["max_concurrency"]
        )
    except KeyboardInterrupt:
        logger.info("迁移被用户中断")
        return EXIT_INTERRUPTED
    except MigrationError as e:
        logger.error(f"迁移失败: {str(e)}")
        return EXIT_FAILURE

    log_summary(outcomes)

    if args.failed_report:
        try:
            count = write_failed_report(outcomes, args.failed_report)
            logger.info(f"已将 {count} 个失败对象写入文件: {args.failed_report}")
        except OSError as e:
            logger.error(f"写入失败对象列表时出错: {str(e)}")

    if any(o.status is MigrationStatus.ERROR for o in outcomes):
        return EXIT_OBJECT_ERRORS
    return EXIT_OK


if __name__ == '__main__':
    sys.exit(main())
