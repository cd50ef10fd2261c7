#!/usr/bin/env python
# -*- coding: utf-8 -*-

"""
S3桶迁移核心
列举源桶全部对象，逐个检查目标桶是否已存在，不存在则以流式分块方式复制，
并为每个对象记录一条迁移结果。单个对象失败不会中断整个迁移。
"""

import asyncio
import enum
import functools
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from botocore.exceptions import ClientError

from storage_client import (
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_PAGE_SIZE,
    DEFAULT_PART_SIZE,
    ObjectNotFound,
    StorageClient,
    StorageEndpointConfig,
)

logger = logging.getLogger(__name__)

# 每处理多少个对象输出一次进度
PROGRESS_INTERVAL = 10

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = 2

# 可重试的错误代码
RETRIABLE_ERROR_CODES = [
    'RequestTimeout',
    'RequestTimeTooSkewed',
    'InternalError',
    'ServiceUnavailable',
    'SlowDown',
    'OperationAborted',
    'ConnectionError',
    'ConnectTimeoutError',
    'ReadTimeoutError'
]


class MigrationError(Exception):
    """迁移相关异常的基类"""


class ConfigurationError(MigrationError):
    """缺少桶名或凭证等必要配置"""


class PreflightError(MigrationError):
    """迁移开始前无法访问源桶或目标桶"""


class InventoryError(MigrationError):
    """列举源桶对象时失败"""


class EmptyObjectBodyError(MigrationError):
    """下载源对象时没有返回内容"""


class MigrationStatus(str, enum.Enum):
    COPIED = 'Copied'
    SKIPPED = 'Skipped'
    ERROR = 'Error'


@dataclass(frozen=True)
class MigrationRequest:
    source_bucket: str
    destination_bucket: str
    source_config: StorageEndpointConfig
    destination_config: StorageEndpointConfig


@dataclass(frozen=True)
class ObjectDescriptor:
    """列举时的源对象快照"""
    key: str
    size: int
    last_modified: datetime
    etag: str

    @classmethod
    def from_listing(cls, item: Dict[str, Any], listed_at: Optional[datetime] = None) -> 'ObjectDescriptor':
        """从list_objects_v2的条目构建，缺失字段使用默认值"""
        return cls(
            key=item.get('Key') or '',
            size=item.get('Size') or 0,
            last_modified=item.get('LastModified') or listed_at or datetime.now(timezone.utc),
            etag=item.get('ETag') or ''
        )


@dataclass(frozen=True)
class MigrationOutcome:
    """单个对象的迁移结果"""
    key: str
    status: MigrationStatus
    error: Optional[str] = None
    size: Optional[int] = None
    last_modified: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {'key': self.key, 'status': self.status.value}
        if self.error is not None:
            result['error'] = self.error
        if self.size is not None:
            result['size'] = self.size
        if self.last_modified is not None:
            result['lastModified'] = self.last_modified
        return result


@dataclass(frozen=True)
class MigrationSummary:
    total: int
    copied: int
    skipped: int
    errors: int
    bytes_copied: int


def summarize(outcomes: List[MigrationOutcome]) -> MigrationSummary:
    """统计迁移结果"""
    copied = [o for o in outcomes if o.status is MigrationStatus.COPIED]
    return MigrationSummary(
        total=len(outcomes),
        copied=len(copied),
        skipped=sum(1 for o in outcomes if o.status is MigrationStatus.SKIPPED),
        errors=sum(1 for o in outcomes if o.status is MigrationStatus.ERROR),
        bytes_copied=sum(o.size or 0 for o in copied)
    )


async def retry_operation(func, *args, max_retries: int = DEFAULT_MAX_RETRIES,
                          retry_delay: float = DEFAULT_RETRY_DELAY, **kwargs):
    """
    重试异步操作，用于在出现临时错误时重试

    Args:
        func: 要重试的协程函数
        *args: 函数的位置参数
        max_retries: 最大尝试次数
        retry_delay: 重试间隔（秒），按指数退避增长
        **kwargs: 函数的关键字参数

    Returns:
        函数的返回值
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await func(*args, **kwargs)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code')
            # 不可重试的错误直接抛出
            if error_code not in RETRIABLE_ERROR_CODES or attempt >= max_retries:
                raise
            wait_time = retry_delay * (2 ** (attempt - 1))
            logger.warning(f"遇到可重试错误 {error_code}，将在 {wait_time} 秒后进行第 {attempt} 次重试...")
        except (ConnectionError, TimeoutError):
            if attempt >= max_retries:
                raise
            wait_time = retry_delay * (2 ** (attempt - 1))
            logger.warning(f"遇到网络错误，将在 {wait_time} 秒后进行第 {attempt} 次重试...")
        await asyncio.sleep(wait_time)


async def list_all_objects(
    bucket: str,
    client: StorageClient,
    page_size: int = DEFAULT_PAGE_SIZE,
    log: Optional[logging.Logger] = None
) -> List[ObjectDescriptor]:
    """
    列出桶中的所有对象

    逐页读取直到没有续页标记为止。任何一页失败都会中止列举，
    不会把不完整的清单当作完整结果返回。

    Args:
        bucket: 桶名称
        client: 存储客户端
        page_size: 每页最大对象数

    Returns:
        按列举顺序排列的对象列表

    Raises:
        InventoryError: 读取某一页失败
    """
    log = log or logger
    objects: List[ObjectDescriptor] = []
    continuation_token = None
    page_number = 0

    while True:
        try:
            page = await client.list_objects(bucket, continuation_token, page_size)
        except Exception as e:
            raise InventoryError(f"Failed to list objects in bucket {bucket}: {e}") from e

        page_number += 1
        listed_at = datetime.now(timezone.utc)
        objects.extend(ObjectDescriptor.from_listing(item, listed_at) for item in page.items)
        log.debug(f"已读取第 {page_number} 页: {len(page.items)} 个对象",
                  extra={'bucket': bucket, 'has_more': bool(page.next_continuation_token)})

        continuation_token = page.next_continuation_token
        if not continuation_token:
            break

    return objects


async def object_exists(key: str, client: StorageClient, bucket: str) -> bool:
    """
    检查对象是否存在，只查询元数据

    只有"不存在"会返回False，权限、限流、网络等错误会继续抛出。
    """
    try:
        await client.head_object(bucket, key)
    except ObjectNotFound:
        return False
    return True


async def transfer_object(
    key: str,
    source_client: StorageClient,
    destination_client: StorageClient,
    source_bucket: str,
    destination_bucket: str,
    part_size: int = DEFAULT_PART_SIZE,
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    max_retries: int = DEFAULT_MAX_RETRIES,
    retry_delay: float = DEFAULT_RETRY_DELAY
) -> None:
    """
    将单个对象从源桶流式复制到目标桶，目标键与源键相同

    整个对象不会重试，只有单次上传请求（单块put或某个分块）在临时错误时重试。

    Raises:
        EmptyObjectBodyError: 源端没有返回内容
    """
    stream = await source_client.get_object_stream(source_bucket, key)
    if stream.body is None:
        raise EmptyObjectBodyError(f"Empty response body for object {key}")

    try:
        await destination_client.put_object_stream(
            destination_bucket,
            key,
            stream.body,
            content_type=stream.content_type,
            content_length=stream.content_length,
            part_size=part_size,
            max_concurrency=max_concurrency,
            retry=functools.partial(retry_operation, max_retries=max_retries, retry_delay=retry_delay)
        )
    finally:
        close = getattr(stream.body, 'close', None)
        if close is not None:
            close()


class S3Migrator:
    """S3桶迁移器"""

    def __init__(
        self,
        client_factory: Callable[[StorageEndpointConfig], Any] = StorageClient,
        part_size: int = DEFAULT_PART_SIZE,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        logger: Optional[logging.Logger] = None
    ):
        """
        初始化迁移器

        Args:
            client_factory: 根据连接配置创建存储客户端（异步上下文管理器）
            part_size: 分块上传大小
            max_concurrency: 单个对象同时上传的分块数
            page_size: 列举时每页最大对象数
            max_retries: 单次上传请求的最大尝试次数
            retry_delay: 重试间隔基数（秒）
            logger: 日志记录器，默认使用模块日志
        """
        self.client_factory = client_factory
        self.part_size = part_size
        self.max_concurrency = max_concurrency
        self.page_size = page_size
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.logger = logger or logging.getLogger(__name__)

    async def migrate(self, request: MigrationRequest) -> List[MigrationOutcome]:
        """
        执行一次迁移

        Returns:
            按源桶列举顺序排列的迁移结果

        Raises:
            PreflightError: 无法访问源桶或目标桶
            InventoryError: 列举源桶失败
        """
        self.logger.info(f"开始迁移: {request.source_bucket} -> {request.destination_bucket}")

        async with self.client_factory(request.source_config) as source_client, \
                self.client_factory(request.destination_config) as destination_client:
            await self._preflight(source_client, request.source_bucket, 'source')
            await self._preflight(destination_client, request.destination_bucket, 'destination')

            try:
                objects = await list_all_objects(
                    request.source_bucket, source_client, self.page_size, self.logger
                )
            except InventoryError as e:
                self.logger.error(f"列举源桶对象失败: {str(e)}", extra={'bucket': request.source_bucket})
                raise

            total_objects = len(objects)
            self.logger.info(f"在桶 {request.source_bucket} 中找到 {total_objects} 个对象")

            outcomes: List[MigrationOutcome] = []
            for obj in objects:
                outcome = await self._migrate_object(obj, source_client, destination_client, request)
                outcomes.append(outcome)

                processed = len(outcomes)
                if processed % PROGRESS_INTERVAL == 0 or processed == total_objects:
                    self.logger.info(f"进度: {processed}/{total_objects} ({processed / total_objects * 100:.1f}%)")

        summary = summarize(outcomes)
        self.logger.info(f"迁移完成: 共 {summary.total} 个对象, 复制 {summary.copied}, "
                         f"跳过 {summary.skipped}, 失败 {summary.errors}")
        return outcomes

    async def _preflight(self, client, bucket: str, side: str) -> None:
        """通过一次浅列举确认桶可访问"""
        try:
            await client.list_objects(bucket, max_keys=1)
        except Exception as e:
            self.logger.error(f"无法访问{'源' if side == 'source' else '目标'}桶 {bucket}: {str(e)}",
                              extra={'bucket': bucket})
            raise PreflightError(f"Failed to access {side} bucket: {e}") from e
        self.logger.debug(f"桶 {bucket} 可访问", extra={'bucket': bucket})

    async def _migrate_object(
        self,
        obj: ObjectDescriptor,
        source_client,
        destination_client,
        request: MigrationRequest
    ) -> MigrationOutcome:
        """处理单个对象，任何异常都转换为Error结果"""
        try:
            if await object_exists(obj.key, destination_client, request.destination_bucket):
                self.logger.info(f"对象已存在，跳过: {obj.key}", extra={'key': obj.key, 'status': 'Skipped'})
                return MigrationOutcome(obj.key, MigrationStatus.SKIPPED,
                                        size=obj.size, last_modified=obj.last_modified)

            await transfer_object(
                obj.key,
                source_client,
                destination_client,
                request.source_bucket,
                request.destination_bucket,
                part_size=self.part_size,
                max_concurrency=self.max_concurrency,
                max_retries=self.max_retries,
                retry_delay=self.retry_delay
            )
        except Exception as e:
            # 连接/读取超时同样只算当前对象失败
            message = str(e) or type(e).__name__
            self.logger.error(f"处理对象 {obj.key} 时出错: {message}", extra={'key': obj.key, 'status': 'Error'})
            return MigrationOutcome(obj.key, MigrationStatus.ERROR, error=message,
                                    size=obj.size, last_modified=obj.last_modified)

        self.logger.info(f"成功复制对象: {obj.key}", extra={'key': obj.key, 'status': 'Copied'})
        return MigrationOutcome(obj.key, MigrationStatus.COPIED, size=obj.size, last_modified=obj.last_modified)


def run_migration(request: MigrationRequest, **kwargs) -> List[MigrationOutcome]:
    """同步执行迁移，kwargs传给S3Migrator"""
    return asyncio.run(S3Migrator(**kwargs).migrate(request))
