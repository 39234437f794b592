"""
Delivery of the final backup artifact.

Supports:
- TelegramDeliverer: sendDocument to a chat, with an HTML caption
- S3Deliverer: upload to an S3 bucket under {prefix}/{YYYY}/{MM}/{filename}

Deliverers do not retry; a failed delivery fails the run.
"""

import html
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, Mapping, Optional, Sequence

import boto3
import requests
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from ..config import RemoteEndpoint
from ..errors import DeliveryError

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = 'https://api.telegram.org'
TELEGRAM_MAX_UPLOAD_BYTES = 50 * 1024 * 1024
TELEGRAM_MAX_CAPTION = 1024

S3_MULTIPART_THRESHOLD = 100 * 1024 * 1024  # 100MB
S3_PART_SIZE = 10 * 1024 * 1024  # 10MB


@dataclass(frozen=True)
class DeliveryReceipt:
    """Result of a delivery."""
    success: bool
    reference: str
    caption: str


def decrypt_command(encrypted_name: str, archive_name: str) -> str:
    """Exact command a recipient runs to recover the archive."""
    return f"backup-courier decrypt --output {archive_name} {encrypted_name}"


def build_caption(
    timestamp: datetime,
    host_name: str,
    sources: Sequence[str],
    database: Optional[str],
    artifact_name: str,
    decrypt_cmd: Optional[str] = None,
    use_html: bool = True,
    max_length: Optional[int] = TELEGRAM_MAX_CAPTION
) -> str:
    """
    Build the human-readable summary sent alongside the artifact.

    If the full list of sources would push the caption over max_length,
    the list is collapsed to a count.

    Args:
        timestamp: Run start time
        host_name: Host the backup was taken on
        sources: Source paths that were snapshotted
        database: Database name (None if no dump was taken)
        artifact_name: Filename of the delivered artifact
        decrypt_cmd: Decryption command, for encrypted artifacts
        use_html: Format with Telegram HTML tags
        max_length: Maximum caption length (None = unlimited)

    Returns:
        Caption text
    """
    caption = _render_caption(timestamp, host_name, [str(s) for s in sources], database,
                              artifact_name, decrypt_cmd, use_html, collapse=False)
    if max_length is not None and len(caption) > max_length and len(sources) > 1:
        caption = _render_caption(timestamp, host_name, [str(s) for s in sources], database,
                                  artifact_name, decrypt_cmd, use_html, collapse=True)
    return caption


def _render_caption(timestamp, host_name, sources, database, artifact_name,
                    decrypt_cmd, use_html, collapse) -> str:
    if use_html:
        esc = html.escape

        def bold(text):
            return f"<b>{text}</b>"

        def code(text):
            return f"<code>{esc(text)}</code>"
    else:
        def esc(text):
            return text

        def bold(text):
            return text

        def code(text):
            return text

    title = "Encrypted Backup Saved" if decrypt_cmd else "Backup Saved"
    lines = [
        bold(f"📦 {title}"),
        f"📅 {bold('Time:')} {esc(timestamp.strftime('%Y-%m-%d %H:%M:%S'))}",
        f"💻 {bold('Server:')} {esc(host_name)}",
    ]

    if collapse:
        lines.append(f"📁 {bold('Folders:')} {len(sources)} paths")
    else:
        for source in sources:
            lines.append(f"📁 {bold('Folder:')} {esc(source)}")

    if database:
        lines.append(f"📸 {bold('Database:')} {esc(database)}")

    label = 'Encrypted Archive:' if decrypt_cmd else 'Archive:'
    lines.append(f"📎 {bold(label)} {esc(artifact_name)}")

    if decrypt_cmd:
        lines.append(f"🔒 {bold('Decrypt with:')} {code(decrypt_cmd)}")

    return '\n'.join(lines)


class TelegramDeliverer:
    """Sends the artifact as a document to a Telegram chat."""

    use_html = True

    def __init__(self, bot_token: str, chat_id: str, api_url: str = TELEGRAM_API_URL,
                 timeout: Optional[float] = None):
        """
        Initialize Telegram deliverer.

        Args:
            bot_token: Bot API token
            chat_id: Target chat ID (or @channel name)
            api_url: Bot API base URL
            timeout: Request timeout in seconds (None = no limit)
        """
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.api_url = api_url.rstrip('/')
        self.timeout = timeout

    def _mask(self, text: str) -> str:
        return text.replace(self.bot_token, '***')

    def deliver(self, artifact_path: Path, caption: str, metadata: Optional[Mapping[str, str]] = None) -> DeliveryReceipt:
        """
        Upload the artifact with its caption in a single sendDocument call.

        Raises:
            DeliveryError: If the file is too large, the request fails or Telegram rejects it
        """
        artifact_path = Path(artifact_path)
        if not artifact_path.is_file():
            raise DeliveryError(f"Artifact not found: {artifact_path}")

        size = artifact_path.stat().st_size
        if size > TELEGRAM_MAX_UPLOAD_BYTES:
            raise DeliveryError(
                f"{artifact_path.name} is {size / 1024 / 1024:.2f} MB, "
                f"over Telegram's {TELEGRAM_MAX_UPLOAD_BYTES // 1024 // 1024} MB bot upload limit"
            )
        if len(caption) > TELEGRAM_MAX_CAPTION:
            raise DeliveryError(f"Caption is {len(caption)} characters, over Telegram's limit of {TELEGRAM_MAX_CAPTION}")

        url = f"{self.api_url}/bot{self.bot_token}/sendDocument"
        logger.info(f"Sending {artifact_path.name} to Telegram chat {self.chat_id}")

        try:
            with open(artifact_path, 'rb') as f:
                response = requests.post(
                    url,
                    data={
                        'chat_id': self.chat_id,
                        'caption': caption,
                        'parse_mode': 'HTML',
                    },
                    files={'document': (artifact_path.name, f)},
                    timeout=self.timeout,
                )
        except requests.Timeout:
            raise DeliveryError(f"Telegram upload timed out after {self.timeout} seconds")
        except requests.RequestException as e:
            raise DeliveryError(f"Telegram upload failed: {self._mask(str(e))}")

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if response.status_code != 200 or not payload.get('ok'):
            description = payload.get('description') or response.text[:200]
            raise DeliveryError(
                f"Telegram API error ({response.status_code}): {self._mask(str(description))}",
                exit_status=response.status_code,
            )

        message_id = payload.get('result', {}).get('message_id')
        logger.info(f"Delivered to Telegram (message_id={message_id})")
        return DeliveryReceipt(success=True, reference=str(message_id), caption=caption)


class S3Deliverer:
    """
    Uploads the artifact to AWS S3.

    Key format: {prefix}/{YYYY}/{MM}/{filename}
    """

    use_html = False

    def __init__(self, access_key: str, secret_key: str, bucket: str, region: str = 'us-east-1',
                 prefix: str = 'backups', endpoint_url: Optional[str] = None,
                 timeout: Optional[float] = None):
        """
        Initialize S3 deliverer.

        Args:
            access_key: AWS access key ID
            secret_key: AWS secret access key
            bucket: S3 bucket name
            region: AWS region (default: us-east-1)
            prefix: Key prefix for uploaded artifacts
            endpoint_url: Custom endpoint for S3-compatible storage
            timeout: Connect/read timeout in seconds (None = botocore defaults)
        """
        self.bucket = bucket
        self.region = region
        self.prefix = prefix.strip('/')

        client_kwargs = {
            'aws_access_key_id': access_key,
            'aws_secret_access_key': secret_key,
            'region_name': region,
        }
        if endpoint_url:
            client_kwargs['endpoint_url'] = endpoint_url
        if timeout:
            client_kwargs['config'] = BotoConfig(connect_timeout=timeout, read_timeout=timeout,
                                                 retries={'max_attempts': 1})

        try:
            self.s3_client = boto3.client('s3', **client_kwargs)
        except (BotoCoreError, ValueError) as e:
            raise DeliveryError(f"Failed to initialize S3 client: {e}")

    def object_key(self, filename: str, now: Optional[datetime] = None) -> str:
        now = now or datetime.now()
        key = f"{now.year}/{now.month:02d}/{filename}"
        return f"{self.prefix}/{key}" if self.prefix else key

    def deliver(self, artifact_path: Path, caption: str, metadata: Optional[Mapping[str, str]] = None) -> DeliveryReceipt:
        """
        Upload the artifact.

        Raises:
            DeliveryError: If upload fails
        """
        artifact_path = Path(artifact_path)
        if not artifact_path.is_file():
            raise DeliveryError(f"Artifact not found: {artifact_path}")

        s3_key = self.object_key(artifact_path.name)
        object_metadata = _ascii_metadata(metadata or {})
        logger.info(f"Uploading {artifact_path.name} to s3://{self.bucket}/{s3_key}")

        try:
            if artifact_path.stat().st_size > S3_MULTIPART_THRESHOLD:
                self._multipart_upload(artifact_path, s3_key, object_metadata)
            else:
                with open(artifact_path, 'rb') as f:
                    self.s3_client.put_object(
                        Bucket=self.bucket,
                        Key=s3_key,
                        Body=f,
                        Metadata=object_metadata
                    )
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise DeliveryError(f"S3 upload failed ({error_code}): {e}")
        except (BotoCoreError, OSError) as e:
            raise DeliveryError(f"S3 upload failed: {e}")

        reference = f"s3://{self.bucket}/{s3_key}"
        logger.info(f"Delivered to {reference}")
        return DeliveryReceipt(success=True, reference=reference, caption=caption)

    def _multipart_upload(self, artifact_path: Path, s3_key: str, metadata: Dict[str, str]):
        """Upload a large file in parts; the upload is aborted if any part fails."""
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket,
            Key=s3_key,
            Metadata=metadata
        )
        upload_id = response['UploadId']
        parts = []

        try:
            with open(artifact_path, 'rb') as f:
                part_number = 1
                while True:
                    data = f.read(S3_PART_SIZE)
                    if not data:
                        break
                    response = self.s3_client.upload_part(
                        Bucket=self.bucket,
                        Key=s3_key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )
                    parts.append({'PartNumber': part_number, 'ETag': response['ETag']})
                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket,
                Key=s3_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )
        except Exception:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket,
                    Key=s3_key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload {upload_id}: {abort_error}")
            raise


def _ascii_metadata(metadata: Mapping[str, str]) -> Dict[str, str]:
    """S3 user metadata must be ASCII."""
    cleaned = {}
    for key, value in metadata.items():
        if value is None:
            continue
        text = str(value).encode('ascii', errors='replace').decode('ascii')
        cleaned[str(key)] = text
    return cleaned


def create_deliverer(endpoint: RemoteEndpoint, timeout: Optional[float] = None):
    """
    Create the deliverer for a configured remote endpoint.

    Args:
        endpoint: Remote endpoint configuration
        timeout: Per-request timeout in seconds

    Returns:
        TelegramDeliverer or S3Deliverer

    Raises:
        DeliveryError: If the endpoint type is unknown
    """
    options = endpoint.options
    if endpoint.kind == 'telegram':
        return TelegramDeliverer(
            bot_token=options['bot_token'],
            chat_id=str(options['chat_id']),
            api_url=options.get('api_url') or TELEGRAM_API_URL,
            timeout=timeout,
        )
    elif endpoint.kind == 's3':
        return S3Deliverer(
            access_key=options['access_key'],
            secret_key=options['secret_key'],
            bucket=options['bucket'],
            region=options.get('region') or 'us-east-1',
            prefix=options.get('prefix', 'backups') or '',
            endpoint_url=options.get('endpoint_url') or os.environ.get('AWS_ENDPOINT_URL_S3'),
            timeout=timeout,
        )
    raise DeliveryError(f"Invalid remote endpoint type: {endpoint.kind}")
