#!/usr/bin/env python
# -*- coding: utf-8 -*-

"""
存储客户端适配层测试
模拟aioboto3客户端，不访问网络
"""

import os
import sys
import asyncio
import unittest
from unittest.mock import AsyncMock, MagicMock, patch

from botocore.exceptions import ClientError

# 添加项目根目录到路径
sys.path.insert(0, os.path.abspath(os.path.dirname(__file__)))

from storage_client import (
    ObjectNotFound,
    StorageClient,
    StorageEndpointConfig,
    read_chunk,
)
from test_migrator import FakeBody


def client_error(code, operation='Operation'):
    return ClientError({'Error': {'Code': code, 'Message': code}}, operation)


class StorageClientTestCase(unittest.IsolatedAsyncioTestCase):
    """模拟aioboto3会话"""

    def setUp(self):
        self.config = StorageEndpointConfig(
            region='ap-southeast-1',
            access_key_id='access',
            secret_access_key='secret',
            endpoint_url='http://minio.example.com:9000'
        )
        self.s3 = AsyncMock()
        self.client_cm = MagicMock()
        self.client_cm.__aenter__ = AsyncMock(return_value=self.s3)
        self.client_cm.__aexit__ = AsyncMock(return_value=False)
        self.session = MagicMock()
        self.session.client.return_value = self.client_cm

    def make_client(self):
        return StorageClient(self.config, session=self.session)


class TestSession(StorageClientTestCase):
    """测试客户端创建与关闭"""

    async def test_client_created_from_config(self):
        async with self.make_client() as client:
            self.assertIs(client.client, self.s3)

        args, kwargs = self.session.client.call_args
        self.assertEqual(args, ('s3',))
        self.assertEqual(kwargs['region_name'], 'ap-southeast-1')
        self.assertEqual(kwargs['endpoint_url'], 'http://minio.example.com:9000')
        self.assertEqual(kwargs['aws_access_key_id'], 'access')
        self.assertEqual(kwargs['aws_secret_access_key'], 'secret')
        self.client_cm.__aexit__.assert_awaited_once()

    async def test_using_closed_client_fails(self):
        client = self.make_client()
        with self.assertRaises(RuntimeError):
            await client.list_objects('bucket')

    def test_secret_hidden_from_repr(self):
        self.assertNotIn('secret', repr(self.config))

    @patch('storage_client.aioboto3')
    def test_default_session(self, mock_aioboto3):
        StorageClient(self.config)
        mock_aioboto3.Session.assert_called_once_with()


class TestListAndHead(StorageClientTestCase):
    """测试列举和元数据查询"""

    async def test_list_objects_page(self):
        self.s3.list_objects_v2.return_value = {
            'Contents': [{'Key': 'a'}, {'Key': 'b'}],
            'NextContinuationToken': 'token-2'
        }

        async with self.make_client() as client:
            page = await client.list_objects('bucket', 'token-1', max_keys=2)

        self.s3.list_objects_v2.assert_awaited_once_with(Bucket='bucket', MaxKeys=2, ContinuationToken='token-1')
        self.assertEqual([item['Key'] for item in page.items], ['a', 'b'])
        self.assertEqual(page.next_continuation_token, 'token-2')

    async def test_list_objects_empty_bucket(self):
        self.s3.list_objects_v2.return_value = {'KeyCount': 0}

        async with self.make_client() as client:
            page = await client.list_objects('bucket')

        self.s3.list_objects_v2.assert_awaited_once_with(Bucket='bucket', MaxKeys=1000)
        self.assertEqual(page.items, [])
        self.assertIsNone(page.next_continuation_token)

    async def test_head_object_not_found(self):
        for code in ('404', 'NoSuchKey', 'NotFound'):
            self.s3.head_object.side_effect = client_error(code, 'HeadObject')
            async with self.make_client() as client:
                with self.assertRaises(ObjectNotFound):
                    await client.head_object('bucket', 'missing')

    async def test_head_object_other_errors_propagate(self):
        self.s3.head_object.side_effect = client_error('AccessDenied', 'HeadObject')

        async with self.make_client() as client:
            with self.assertRaises(ClientError):
                await client.head_object('bucket', 'key')

    async def test_get_object_stream(self):
        body = FakeBody(b'hello')
        self.s3.get_object.return_value = {'Body': body, 'ContentType': 'text/plain', 'ContentLength': 5}

        async with self.make_client() as client:
            stream = await client.get_object_stream('bucket', 'key')

        self.assertIs(stream.body, body)
        self.assertEqual(stream.content_type, 'text/plain')
        self.assertEqual(stream.content_length, 5)


class TestPutObjectStream(StorageClientTestCase):
    """测试上传"""

    def setUp(self):
        super().setUp()
        self.s3.create_multipart_upload.return_value = {'UploadId': 'upload-1'}

        async def upload_part(**kwargs):
            return {'ETag': f'"etag-{kwargs["PartNumber"]}"'}

        self.s3.upload_part.side_effect = upload_part

    async def test_small_body_uses_single_put(self):
        async with self.make_client() as client:
            await client.put_object_stream('bucket', 'key', FakeBody(b'abc'), part_size=5)

        self.s3.put_object.assert_awaited_once_with(
            Bucket='bucket', Key='key', Body=b'abc', ContentType='application/octet-stream')
        self.s3.create_multipart_upload.assert_not_called()

    async def test_empty_body_uploaded_as_empty_object(self):
        async with self.make_client() as client:
            await client.put_object_stream('bucket', 'key', FakeBody(b''), content_type='text/plain')

        self.s3.put_object.assert_awaited_once_with(Bucket='bucket', Key='key', Body=b'', ContentType='text/plain')

    async def test_large_body_uses_multipart_upload(self):
        data = b'0123456789AB'

        async with self.make_client() as client:
            await client.put_object_stream('bucket', 'key', FakeBody(data), content_type='image/png', part_size=5)

        self.s3.create_multipart_upload.assert_awaited_once_with(Bucket='bucket', Key='key', ContentType='image/png')
        uploaded = sorted(self.s3.upload_part.call_args_list, key=lambda c: c.kwargs['PartNumber'])
        self.assertEqual(b''.join(c.kwargs['Body'] for c in uploaded), data)
        self.assertEqual([len(c.kwargs['Body']) for c in uploaded], [5, 5, 2])
        self.s3.complete_multipart_upload.assert_awaited_once_with(
            Bucket='bucket',
            Key='key',
            UploadId='upload-1',
            MultipartUpload={'Parts': [
                {'ETag': '"etag-1"', 'PartNumber': 1},
                {'ETag': '"etag-2"', 'PartNumber': 2},
                {'ETag': '"etag-3"', 'PartNumber': 3},
            ]}
        )
        self.s3.abort_multipart_upload.assert_not_called()
        self.s3.put_object.assert_not_called()

    async def test_part_failure_aborts_upload(self):
        async def upload_part(**kwargs):
            if kwargs['PartNumber'] == 2:
                raise Exception("Upload failed")
            return {'ETag': '"etag"'}

        self.s3.upload_part.side_effect = upload_part

        async with self.make_client() as client:
            with self.assertRaisesRegex(Exception, "Upload failed"):
                await client.put_object_stream('bucket', 'key', FakeBody(b'x' * 12), part_size=4)

        self.s3.abort_multipart_upload.assert_awaited_once_with(Bucket='bucket', Key='key', UploadId='upload-1')
        self.s3.complete_multipart_upload.assert_not_called()

    async def test_abort_failure_keeps_original_error(self):
        self.s3.complete_multipart_upload.side_effect = client_error('InvalidPart', 'CompleteMultipartUpload')
        self.s3.abort_multipart_upload.side_effect = Exception("abort failed")

        async with self.make_client() as client:
            with self.assertRaises(ClientError):
                await client.put_object_stream('bucket', 'key', FakeBody(b'x' * 8), part_size=4)

    async def test_put_is_not_retried_by_client(self):
        self.s3.put_object.side_effect = client_error('SlowDown', 'PutObject')

        async with self.make_client() as client:
            with self.assertRaises(ClientError):
                await client.put_object_stream('bucket', 'key', FakeBody(b'abc'))

        self.assertEqual(self.s3.put_object.await_count, 1)

    async def test_requests_go_through_injected_retry(self):
        seen = []

        async def retry(func, **kwargs):
            seen.append(kwargs.get('PartNumber'))
            return await func(**kwargs)

        async with self.make_client() as client:
            await client.put_object_stream('bucket', 'key', FakeBody(b'x' * 8), part_size=4, retry=retry)
            await client.put_object_stream('bucket', 'small', FakeBody(b'x'), part_size=4, retry=retry)

        self.assertEqual(sorted(seen[:2]), [1, 2])
        self.assertEqual(seen[2:], [None])
        self.s3.put_object.assert_awaited_once()

    async def test_cancellation_aborts_upload(self):
        started = asyncio.Event()

        async def upload_part(**kwargs):
            started.set()
            await asyncio.Event().wait()

        self.s3.upload_part.side_effect = upload_part

        async with self.make_client() as client:
            task = asyncio.ensure_future(
                client.put_object_stream('bucket', 'key', FakeBody(b'x' * 8), part_size=4))
            await started.wait()
            task.cancel()
            with self.assertRaises(asyncio.CancelledError):
                await task

        self.s3.abort_multipart_upload.assert_awaited_once_with(Bucket='bucket', Key='key', UploadId='upload-1')
        self.s3.complete_multipart_upload.assert_not_called()

    async def test_concurrent_parts_are_bounded(self):
        in_flight = 0
        peak = 0

        async def upload_part(**kwargs):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0)
            await asyncio.sleep(0)
            in_flight -= 1
            return {'ETag': f'"etag-{kwargs["PartNumber"]}"'}

        self.s3.upload_part.side_effect = upload_part

        async with self.make_client() as client:
            await client.put_object_stream('bucket', 'key', FakeBody(b'abcdefgh'), part_size=1, max_concurrency=2)

        self.assertEqual(self.s3.upload_part.await_count, 8)
        self.assertLessEqual(peak, 2)
        parts = self.s3.complete_multipart_upload.call_args.kwargs['MultipartUpload']['Parts']
        self.assertEqual([p['PartNumber'] for p in parts], list(range(1, 9)))


class TestReadChunk(unittest.IsolatedAsyncioTestCase):
    """测试按块读取"""

    async def test_short_reads_are_combined(self):
        body = MagicMock()
        body.read = AsyncMock(side_effect=[b'ab', b'c', b'de', b''])

        self.assertEqual(await read_chunk(body, 5), b'abcde')

    async def test_stops_at_end_of_stream(self):
        self.assertEqual(await read_chunk(FakeBody(b'abc'), 10), b'abc')


if __name__ == "__main__":
    unittest.main()
