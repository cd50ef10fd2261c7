#!/usr/bin/env python
# -*- coding: utf-8 -*-

"""
S3连接测试脚本
迁移前检查源桶和目标桶能否访问，不复制任何对象
"""

import sys
import asyncio
import logging
import argparse
from typing import List, Optional

from main import format_size, load_config, load_env_config, setup_logging
from migrator import list_all_objects
from storage_client import DEFAULT_REGION, StorageClient, StorageEndpointConfig

logger = logging.getLogger(__name__)


async def check_bucket_access(config: StorageEndpointConfig, bucket_name: str, count: bool = False,
                              client_factory=StorageClient) -> bool:
    """测试对存储桶的访问权限"""
    try:
        async with client_factory(config) as client:
            page = await client.list_objects(bucket_name, max_keys=1)
            logger.info(f"成功访问存储桶 {bucket_name}")

            if count:
                objects = await list_all_objects(bucket_name, client)
                total_size = sum(obj.size for obj in objects)
                logger.info(f"存储桶 {bucket_name} 中共有 {len(objects)} 个对象, 总大小约为 {format_size(total_size)}")
            elif page.items:
                logger.info(f"存储桶中的第一个对象: {page.items[0].get('Key')}")
            else:
                logger.info(f"存储桶 {bucket_name} 为空")
        return True
    except Exception as e:
        logger.error(f"访问存储桶 {bucket_name} 失败: {str(e)}")
        return False


def endpoint_config(settings: dict, side: str) -> StorageEndpointConfig:
    return StorageEndpointConfig(
        region=settings.get(f"{side}_region") or DEFAULT_REGION,
        access_key_id=settings.get(f"{side}_access_key") or '',
        secret_access_key=settings.get(f"{side}_secret_key") or '',
        endpoint_url=settings.get(f"{side}_endpoint")
    )


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """解析命令行参数"""
    parser = argparse.ArgumentParser(description='测试S3存储连接')
    parser.add_argument('-c', '--config', help='配置文件路径')
    parser.add_argument('--source-only', action='store_true', help='仅测试源存储')
    parser.add_argument('--destination-only', action='store_true', help='仅测试目标存储')
    parser.add_argument('--count', action='store_true', help='统计桶内对象数量和总大小')
    return parser.parse_args(argv)


async def run_checks(settings: dict, sides: List[str], count: bool) -> bool:
    ok = True
    for side in sides:
        bucket = settings.get(f"{side}_bucket")
        label = '源' if side == 'source' else '目标'
        logger.info(f"===== 测试{label}存储连接 =====")
        if not bucket:
            logger.error(f"未指定{label}桶名称")
            ok = False
            continue
        ok = await check_bucket_access(endpoint_config(settings, side), bucket, count) and ok
    return ok


def main(argv: Optional[List[str]] = None) -> int:
    """主函数"""
    args = parse_arguments(argv)
    setup_logging()

    settings = load_env_config()
    if args.config:
        file_config = load_config(args.config)
        if file_config is None:
            return 1
        settings.update(file_config)

    sides = [side for side, skip in (("source", args.destination_only), ("destination", args.source_only))
             if not skip]
    logger.debug(f"读取的配置项: {sorted(settings)}")

    return 0 if asyncio.run(run_checks(settings, sides, args.count)) else 1


if __name__ == "__main__":
    sys.exit(main())
