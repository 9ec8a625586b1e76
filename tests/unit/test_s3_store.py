from __future__ import annotations

import json

import pytest
from botocore.exceptions import ClientError
from cryptography.fernet import Fernet

from state.persisted import PersistedState
from state.s3_store import OptimisticLockError, S3StorageProvider, StorageDecryptError


class _FakeBody:
    def __init__(self, data: bytes) -> None:
        self._data = data

    def read(self) -> bytes:
        return self._data


class _FakeS3:
    def __init__(self) -> None:
        self._store = {}  # (bucket, key) -> {Body: bytes, ETag: str}
        self._counter = 0

    def _etag(self) -> str:
        self._counter += 1
        return f'"fake-{self._counter}"'

    def put_object(self, *, Bucket: str, Key: str, Body: bytes, ContentType: str):
        etag = self._etag()
        self._store[(Bucket, Key)] = {"Body": Body, "ETag": etag}
        return {"ETag": etag}

    def get_object(self, *, Bucket: str, Key: str):
        item = self._store.get((Bucket, Key))
        if not item:
            raise ClientError({"Error": {"Code": "NoSuchKey"}}, "GetObject")
        return {"Body": _FakeBody(item["Body"]), "ETag": item["ETag"]}

    def copy_object(self, *, Bucket: str, Key: str, CopySource, IfMatch: str | None = None, MetadataDirective=None):
        dest_item = self._store.get((Bucket, Key))
        if IfMatch is not None:
            if not dest_item or dest_item.get("ETag") != IfMatch:
                raise ClientError({"Error": {"Code": "PreconditionFailed"}}, "CopyObject")

        src_item = self._store.get((CopySource["Bucket"], CopySource["Key"]))
        if not src_item:
            raise ClientError({"Error": {"Code": "NoSuchKey"}}, "CopyObject")

        etag = self._etag()
        self._store[(Bucket, Key)] = {"Body": src_item["Body"], "ETag": etag}
        return {"CopyObjectResult": {"ETag": etag}}

    def delete_object(self, *, Bucket: str, Key: str):
        self._store.pop((Bucket, Key), None)
        return {}

    def keys(self):
        return sorted(k for _, k in self._store)

    def raw(self, key: str) -> bytes:
        return self._store[("b", key)]["Body"]


@pytest.mark.asyncio
async def test_get_missing_returns_none():
    store = S3StorageProvider(s3=_FakeS3(), bucket="b", key="k")

    assert await store.get() is None
    assert store.etag is None


@pytest.mark.asyncio
async def test_get_propagates_other_client_errors():
    class _DeniedS3(_FakeS3):
        def get_object(self, *, Bucket: str, Key: str):
            raise ClientError({"Error": {"Code": "AccessDenied"}}, "GetObject")

    store = S3StorageProvider(s3=_DeniedS3(), bucket="b", key="k")
    with pytest.raises(ClientError):
        await store.get()


@pytest.mark.asyncio
async def test_plaintext_put_and_get_roundtrip():
    s3 = _FakeS3()
    store = S3StorageProvider(s3=s3, bucket="b", key="k")

    await store.put('{"masterAccountId": "1"}')
    assert json.loads(s3.raw("k")) == {"masterAccountId": "1"}
    assert await store.get() == '{"masterAccountId": "1"}'


@pytest.mark.asyncio
async def test_encrypted_put_and_get_roundtrip():
    s3 = _FakeS3()
    key = Fernet.generate_key()
    store = S3StorageProvider(s3=s3, bucket="b", key="k", fernet_key=key)

    await store.put("secret-state")
    assert b"secret-state" not in s3.raw("k")
    assert await store.get() == "secret-state"

    # str keys are accepted too
    other = S3StorageProvider(s3=s3, bucket="b", key="k", fernet_key=key.decode("utf-8"))
    assert await other.get() == "secret-state"


@pytest.mark.asyncio
async def test_get_raises_on_bad_token():
    s3 = _FakeS3()
    s3.put_object(Bucket="b", Key="k", Body=b"garbage", ContentType="application/octet-stream")

    store = S3StorageProvider(s3=s3, bucket="b", key="k", fernet_key=Fernet.generate_key())
    with pytest.raises(StorageDecryptError):
        await store.get()


@pytest.mark.asyncio
async def test_conditional_put_succeeds_when_etag_matches():
    s3 = _FakeS3()
    store = S3StorageProvider(s3=s3, bucket="b", key="k", conditional=True)

    await store.put("v1")  # no known etag: unconditional
    etag1 = store.etag
    await store.put("v2")

    assert store.etag != etag1
    assert await store.get() == "v2"
    assert s3.keys() == ["k"]  # temporary object cleaned up


@pytest.mark.asyncio
async def test_conditional_put_raises_on_conflict():
    s3 = _FakeS3()
    seed = S3StorageProvider(s3=s3, bucket="b", key="k")
    await seed.put("v1")

    first = S3StorageProvider(s3=s3, bucket="b", key="k", conditional=True)
    second = S3StorageProvider(s3=s3, bucket="b", key="k", conditional=True)
    await first.get()
    await second.get()

    await first.put("from-first")
    with pytest.raises(OptimisticLockError):
        await second.put("from-second")

    assert await seed.get() == "from-first"
    assert s3.keys() == ["k"]


@pytest.mark.asyncio
async def test_unconditional_put_overwrites_last_writer_wins():
    s3 = _FakeS3()
    first = S3StorageProvider(s3=s3, bucket="b", key="k")
    second = S3StorageProvider(s3=s3, bucket="b", key="k")
    await first.put("v1")
    await first.get()
    await second.get()

    await first.put("from-first")
    await second.put("from-second")

    assert await first.get() == "from-second"


@pytest.mark.asyncio
async def test_persisted_state_over_encrypted_s3(master_account_id):
    s3 = _FakeS3()
    provider = S3StorageProvider(s3=s3, bucket="b", key="state.json", fernet_key=Fernet.generate_key())

    state = await PersistedState.load(provider, master_account_id)
    state.put_template_hash("abc")
    await state.save()

    reloaded = await PersistedState.load(provider, master_account_id)
    assert reloaded.get_template_hash() == "abc"
