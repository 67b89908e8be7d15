import logging

import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from config import BackupJob

logger = logging.getLogger(__name__)

CONTENT_TYPE = "application/sql"

_MISSING_BUCKET_CODES = {"404", "NoSuchBucket", "NotFound"}


class UploadError(Exception):
    """Raised when talking to the object store fails."""


def endpoint_url(endpoint: str) -> str:
    if "://" in endpoint:
        return endpoint
    return f"https://{endpoint}"


def make_s3_client(job: BackupJob):
    if job.tls_insecure:
        logger.warning("%s: TLS certificate verification disabled for %s", job.name, job.endpoint)

    session = boto3.session.Session()
    return session.client(
        service_name="s3",
        endpoint_url=endpoint_url(job.endpoint),
        aws_access_key_id=job.access_key,
        aws_secret_access_key=job.secret_key,
        region_name=job.region or None,
        verify=not job.tls_insecure,
        config=BotoConfig(
            signature_version="s3v4",
            s3={"addressing_style": "path"},
            disable_request_compression=True,
            tcp_keepalive=True,
        ),
    )


def bucket_exists(client, bucket: str) -> bool:
    try:
        client.head_bucket(Bucket=bucket)
    except ClientError as e:
        code = str(e.response.get("Error", {}).get("Code", ""))
        if code in _MISSING_BUCKET_CODES:
            return False
        raise UploadError(f"Cannot check bucket {bucket}: {e}") from e
    except BotoCoreError as e:
        raise UploadError(f"Cannot check bucket {bucket}: {e}") from e
    return True


def create_bucket(client, bucket: str, region: str) -> None:
    kwargs = {"Bucket": bucket}
    # us-east-1 is the default location and must not be sent as a constraint
    if region and region != "us-east-1":
        kwargs["CreateBucketConfiguration"] = {"LocationConstraint": region}
    try:
        client.create_bucket(**kwargs)
    except (BotoCoreError, ClientError) as e:
        raise UploadError(f"Cannot create bucket {bucket}: {e}") from e


def ensure_bucket(client, job: BackupJob) -> None:
    if bucket_exists(client, job.bucket_name):
        logger.info("S3: Found bucket %s", job.bucket_name)
        return
    logger.info("S3: Bucket %s does not exist, creating in region %r", job.bucket_name, job.region)
    create_bucket(client, job.bucket_name, job.region)
    logger.info("S3: Created bucket %s", job.bucket_name)


def upload_file(client, path: str, bucket: str, key: str) -> None:
    try:
        client.upload_file(path, bucket, key, ExtraArgs={"ContentType": CONTENT_TYPE})
    except (BotoCoreError, ClientError, S3UploadFailedError, OSError) as e:
        raise UploadError(f"Cannot upload {path} to {bucket}/{key}: {e}") from e
