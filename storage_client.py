#!/usr/bin/env python
# -*- coding: utf-8 -*-

"""
S3存储客户端适配层
将对象存储API（列举、查询元数据、下载流、分块上传）封装为一个异步客户端
源端和目标端各使用一个实例
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aioboto3
import boto3
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)

# S3允许的最小分块大小为5MB（最后一块除外）
DEFAULT_PART_SIZE = 5 * 1024 * 1024
DEFAULT_MAX_CONCURRENCY = 4
DEFAULT_PAGE_SIZE = 1000
DEFAULT_REGION = 'us-east-1'
DEFAULT_CONTENT_TYPE = 'application/octet-stream'

# 表示对象不存在的错误代码
NOT_FOUND_ERROR_CODES = ('404', 'NoSuchKey', 'NotFound')


class ObjectNotFound(Exception):
    """对象不存在（不是真正的错误，存在性检查据此返回False）"""

    def __init__(self, bucket: str, key: str):
        super().__init__(f"Object not found: s3://{bucket}/{key}")
        self.bucket = bucket
        self.key = key


@dataclass(frozen=True)
class StorageEndpointConfig:
    """一侧存储的连接配置"""
    region: str = DEFAULT_REGION
    access_key_id: str = ''
    secret_access_key: str = field(default='', repr=False)
    # 兼容S3协议的其他存储（MinIO、R2等）
    endpoint_url: Optional[str] = None


@dataclass
class ListPage:
    """列举结果的一页"""
    items: List[Dict[str, Any]]
    next_continuation_token: Optional[str] = None


@dataclass
class ObjectStream:
    """源对象的字节流及内容元数据"""
    body: Any
    content_type: Optional[str] = None
    content_length: Optional[int] = None


async def read_chunk(body, size: int) -> bytes:
    """从流中读取最多size字节，流结束时返回不足size的数据"""
    buffer = bytearray()
    while len(buffer) < size:
        data = await body.read(size - len(buffer))
        if not data:
            break
        buffer.extend(data)
    return bytes(buffer)


async def send_request(retry, func, **kwargs):
    """执行一次S3请求，retry为调用方提供的重试策略，为None时只请求一次"""
    if retry is None:
        return await func(**kwargs)
    return await retry(func, **kwargs)


class StorageClient:
    """
    异步S3客户端

    用法:
        async with StorageClient(config) as client:
            page = await client.list_objects('bucket')
    """

    def __init__(
        self,
        config: StorageEndpointConfig,
        session=None
    ):
        self.config = config
        self._session = session or aioboto3.Session()
        self._client_cm = None
        self._client = None

    async def __aenter__(self):
        self._client_cm = self._session.client(
            's3',
            region_name=self.config.region,
            endpoint_url=self.config.endpoint_url,
            aws_access_key_id=self.config.access_key_id,
            aws_secret_access_key=self.config.secret_access_key,
            config=boto3.session.Config(signature_version='s3v4')
        )
        self._client = await self._client_cm.__aenter__()
        logger.debug(f"已创建S3客户端 (区域: {self.config.region}, 端点: {self.config.endpoint_url or '默认'})")
        return self

    async def __aexit__(self, exc_type, exc, tb):
        client_cm, self._client_cm, self._client = self._client_cm, None, None
        if client_cm is not None:
            await client_cm.__aexit__(exc_type, exc, tb)

    @property
    def client(self):
        if self._client is None:
            raise RuntimeError("StorageClient is not open; use 'async with'")
        return self._client

    async def list_objects(
        self,
        bucket: str,
        continuation_token: Optional[str] = None,
        max_keys: int = DEFAULT_PAGE_SIZE
    ) -> ListPage:
        """列举一页对象"""
        params = {'Bucket': bucket, 'MaxKeys': max_keys}
        if continuation_token:
            params['ContinuationToken'] = continuation_token
        response = await self.client.list_objects_v2(**params)
        return ListPage(
            items=response.get('Contents', []),
            next_continuation_token=response.get('NextContinuationToken')
        )

    async def head_object(self, bucket: str, key: str) -> Dict[str, Any]:
        """
        获取对象元数据（不下载内容）

        Raises:
            ObjectNotFound: 对象不存在
            ClientError: 其他错误（权限、限流等）
        """
        try:
            return await self.client.head_object(Bucket=bucket, Key=key)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code')
            if error_code in NOT_FOUND_ERROR_CODES:
                raise ObjectNotFound(bucket, key) from e
            raise

    async def get_object_stream(self, bucket: str, key: str) -> ObjectStream:
        """获取对象的字节流"""
        response = await self.client.get_object(Bucket=bucket, Key=key)
        return ObjectStream(
            body=response.get('Body'),
            content_type=response.get('ContentType'),
            content_length=response.get('ContentLength')
        )

    async def put_object_stream(
        self,
        bucket: str,
        key: str,
        body,
        content_type: Optional[str] = None,
        content_length: Optional[int] = None,
        part_size: int = DEFAULT_PART_SIZE,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        retry: Optional[Callable[..., Awaitable[Any]]] = None
    ) -> None:
        """
        将字节流上传到目标对象

        不足一个分块的数据直接put_object，否则使用分块上传。
        内存占用约为 part_size * (max_concurrency + 1)，与对象大小无关。

        Args:
            bucket: 目标桶名称
            key: 对象键名
            body: 支持 await body.read(n) 的流
            content_type: 内容类型
            content_length: 源对象报告的长度，仅用于日志
            part_size: 分块大小
            max_concurrency: 同时上传的分块数量上限
            retry: 单次请求（put_object、upload_part）的重试策略，本层不做重试
        """
        content_type = content_type or DEFAULT_CONTENT_TYPE
        first_chunk = await read_chunk(body, part_size)

        if len(first_chunk) < part_size:
            await send_request(
                retry,
                self.client.put_object,
                Bucket=bucket,
                Key=key,
                Body=first_chunk,
                ContentType=content_type
            )
            return

        await self._multipart_upload(
            bucket, key, body, first_chunk, content_type, content_length, part_size, max_concurrency, retry
        )

    async def _multipart_upload(
        self,
        bucket: str,
        key: str,
        body,
        first_chunk: bytes,
        content_type: str,
        content_length: Optional[int],
        part_size: int,
        max_concurrency: int,
        retry=None
    ) -> None:
        """分块上传，任何分块失败都会中止整个上传，不在目标端留下残留分块"""
        multipart_upload = await self.client.create_multipart_upload(
            Bucket=bucket,
            Key=key,
            ContentType=content_type
        )
        upload_id = multipart_upload['UploadId']
        logger.debug(f"开始分块上传: {key} (大小: {content_length}, UploadId: {upload_id})",
                     extra={'key': key, 'bucket': bucket})

        semaphore = asyncio.Semaphore(max_concurrency)
        tasks: List[asyncio.Task] = []

        try:
            chunk = first_chunk
            part_number = 1
            while chunk:
                # 等待空闲的上传槽位后再读取下一块，形成背压
                await semaphore.acquire()
                tasks.append(asyncio.ensure_future(
                    self._upload_part(bucket, key, upload_id, part_number, chunk, semaphore, retry)
                ))
                for task in tasks:
                    if task.done() and not task.cancelled() and task.exception() is not None:
                        raise task.exception()
                chunk = await read_chunk(body, part_size)
                part_number += 1

            parts = await asyncio.gather(*tasks)

            await self.client.complete_multipart_upload(
                Bucket=bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': sorted(parts, key=lambda p: p['PartNumber'])}
            )
            logger.debug(f"分块上传完成: {key} (共 {len(parts)} 块)", extra={'key': key, 'bucket': bucket})
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            try:
                await self.client.abort_multipart_upload(Bucket=bucket, Key=key, UploadId=upload_id)
                logger.debug(f"已中止分块上传: {key} (UploadId: {upload_id})")
            except Exception as abort_error:
                logger.error(f"中止分块上传时出错: {str(abort_error)}", extra={'key': key, 'bucket': bucket})
            raise

    async def _upload_part(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        part_number: int,
        data: bytes,
        semaphore: asyncio.Semaphore,
        retry=None
    ) -> Dict[str, Any]:
        try:
            part = await send_request(
                retry,
                self.client.upload_part,
                Body=data,
                Bucket=bucket,
                Key=key,
                PartNumber=part_number,
                UploadId=upload_id
            )
            return {'ETag': part['ETag'], 'PartNumber': part_number}
        finally:
            semaphore.release()
