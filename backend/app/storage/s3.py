import os
from dataclasses import dataclass
from typing import Optional

import boto3
from botocore.config import Config


@dataclass(frozen=True)
class S3Config:
    endpoint_url: str
    access_key_id: str
    secret_access_key: str
    bucket: str
    region: str
    use_ssl: bool
    public_base_url: str


def get_s3_config() -> Optional[S3Config]:
    endpoint = (os.environ.get("S3_ENDPOINT_URL") or "").strip()
    access = (os.environ.get("S3_ACCESS_KEY_ID") or "").strip()
    secret = (os.environ.get("S3_SECRET_ACCESS_KEY") or "").strip()
    bucket = (os.environ.get("S3_BUCKET") or "").strip()
    region = (os.environ.get("S3_REGION") or "us-east-1").strip() or "us-east-1"
    use_ssl_raw = (os.environ.get("S3_USE_SSL") or "").strip().lower()
    use_ssl = use_ssl_raw not in {"0", "false", "no"}
    # Where clients fetch product images from (CDN or the bucket's public endpoint).
    public_base = (os.environ.get("S3_PUBLIC_BASE_URL") or "").strip().rstrip("/")

    if not endpoint or not access or not secret or not bucket:
        return None
    return S3Config(
        endpoint_url=endpoint,
        access_key_id=access,
        secret_access_key=secret,
        bucket=bucket,
        region=region,
        use_ssl=use_ssl,
        public_base_url=public_base or f"{endpoint.rstrip('/')}/{bucket}",
    )


def s3_enabled() -> bool:
    return get_s3_config() is not None


def _require_config() -> S3Config:
    cfg = get_s3_config()
    if not cfg:
        raise RuntimeError("S3 not configured")
    return cfg


def _client(cfg: S3Config):
    # Path-style v4 signatures so MinIO behaves like S3.
    bc = Config(signature_version="s3v4", s3={"addressing_style": "path"})
    return boto3.client(
        "s3",
        endpoint_url=cfg.endpoint_url,
        aws_access_key_id=cfg.access_key_id,
        aws_secret_access_key=cfg.secret_access_key,
        region_name=cfg.region,
        use_ssl=cfg.use_ssl,
        config=bc,
    )


def put_bytes(*, key: str, data: bytes, content_type: str, cache_control: Optional[str] = None) -> str:
    """Uploads `data` under `key` and returns its public URL."""
    cfg = _require_config()
    extra = {"CacheControl": cache_control} if cache_control else {}
    _client(cfg).put_object(
        Bucket=cfg.bucket,
        Key=key,
        Body=data or b"",
        ContentType=content_type or "application/octet-stream",
        **extra,
    )
    return public_url(key, cfg)


def delete_object(*, key: str) -> None:
    cfg = _require_config()
    _client(cfg).delete_object(Bucket=cfg.bucket, Key=key)


def public_url(key: str, cfg: Optional[S3Config] = None) -> str:
    cfg = cfg or _require_config()
    return f"{cfg.public_base_url}/{key.lstrip('/')}"


def key_from_public_url(url: Optional[str], cfg: Optional[S3Config] = None) -> Optional[str]:
    """
    Object key for a URL produced by `public_url`, or None when the URL points
    somewhere else (e.g. an image URL typed in by hand).
    """
    cfg = cfg or get_s3_config()
    if not url or not cfg:
        return None
    base = cfg.public_base_url + "/"
    if not url.startswith(base):
        return None
    key = url[len(base):].split("?", 1)[0]
    return key or None
