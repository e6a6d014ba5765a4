from datetime import datetime, timedelta

import pytest

from app.core.config import settings
from app.core.errors import (
    DownloadTokenConsumedError,
    DownloadTokenError,
    DownloadTokenExpiredError,
    ExportNotReadyError,
)
from app.models.export_job import ExportJob
from app.services.download_token import (
    new_token_expiry,
    sign_download_token,
    token_view,
    verify_download_token,
)

NOW = datetime(2024, 1, 1, 12, 0, 0, 123456)


def _job(status="completed", consumed_at=None):
    expires_at = new_token_expiry(NOW)
    return ExportJob(
        id="job-1",
        user_id="u1",
        type="trades",
        format="csv",
        status=status,
        download_token_expires_at=expires_at,
        download_token_consumed_at=consumed_at,
    )


def test_expiry_is_truncated_to_milliseconds():
    expiry = new_token_expiry(NOW)
    assert expiry == datetime(2024, 1, 1, 12, 10, 0, 123000)


def test_signature_depends_on_secret_and_expiry(monkeypatch):
    expiry = new_token_expiry(NOW)
    token = sign_download_token("job-1", expiry)
    assert len(token) == 32
    assert token != sign_download_token("job-1", expiry + timedelta(milliseconds=1))
    assert token != sign_download_token("job-2", expiry)
    monkeypatch.setattr(settings, "EXPORT_TOKEN_SECRET", "other")
    assert token != sign_download_token("job-1", expiry)


def test_valid_token_passes():
    job = _job()
    verify_download_token(job, token_view(job, NOW)["download_token"], NOW)


@pytest.mark.parametrize("job,token,now,error", [
    (_job(status="running"), "x", NOW, ExportNotReadyError),
    (_job(), None, NOW, DownloadTokenError),
    (_job(), "0" * 32, NOW, DownloadTokenError),
])
def test_rejections(job, token, now, error):
    with pytest.raises(error):
        verify_download_token(job, token, now)


def test_consumed_token_is_rejected():
    job = _job(consumed_at=NOW)
    with pytest.raises(DownloadTokenConsumedError):
        verify_download_token(job, sign_download_token(job.id, job.download_token_expires_at), NOW)


def test_expired_token_is_rejected():
    job = _job()
    token = sign_download_token(job.id, job.download_token_expires_at)
    later = NOW + timedelta(minutes=11)
    with pytest.raises(DownloadTokenExpiredError):
        verify_download_token(job, token, later)
    view = token_view(job, later)
    assert view["token_expired"] is True
    assert view["token_consumed"] is False
