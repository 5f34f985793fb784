"""Re-run the unfinished part of an envelope's signing pipeline.

Usage: python scripts/resume_envelope.py <envelope_id>
"""

import argparse
import sys
from pathlib import Path
from uuid import UUID

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from sqlmodel import Session  # noqa: E402

from signflow.core.config import SigningConfig, settings  # noqa: E402
from signflow.core.errors import SigningError  # noqa: E402
from signflow.core.logging_setup import logger  # noqa: E402
from signflow.db.session import engine  # noqa: E402
from signflow.services.audit import AuditService  # noqa: E402
from signflow.services.notification import NotificationService  # noqa: E402
from signflow.services.signing import EnvelopeSigningService  # noqa: E402
from signflow.services.storage import get_storage  # noqa: E402


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("envelope_id", type=UUID)
    args = parser.parse_args(argv)

    try:
        config = SigningConfig.from_settings(settings)
        storage = get_storage(settings)
        with Session(engine) as session:
            notifications = NotificationService(
                AuditService(session),
                public_app_url=config.public_app_url,
                max_workers=config.notification_max_workers,
            )
            notifications.apply_email_settings(settings)
            service = EnvelopeSigningService(session, config, storage, notification_service=notifications)
            result = service.resume_envelope(args.envelope_id)
    except SigningError as exc:
        logger.error("Resume of envelope %s failed: %s", args.envelope_id, exc)
        return 1

    print(f"envelope={args.envelope_id} status={result.envelope_status} success={result.success}")
    if result.executed_document_url:
        print(f"executed_document_url={result.executed_document_url}")
    return 0 if result.success else 1


if __name__ == "__main__":
    raise SystemExit(main())
