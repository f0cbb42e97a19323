import pytest

from trainer_api.blobstore import MultipartBlobStore, S3BlobStore

from fakes import BUCKET, REGION, FakeS3


@pytest.fixture
def fake_s3():
    return FakeS3()


@pytest.fixture
def weights_store(fake_s3):
    return MultipartBlobStore(fake_s3, BUCKET, region=REGION)


@pytest.fixture
def bundle_store(fake_s3):
    return S3BlobStore(fake_s3, BUCKET, region=REGION)
