"""
Audit trail for mutating submission operations.

`audited` wraps a service method explicitly at its definition: it resolves who
is acting, runs the method, then records SUCCESS, DENIED or FAILURE to the
service's audit sink. The record is written after the wrapped method has
committed or rolled back, so an audit failure can never undo the primary
operation; it is logged and dropped.
"""

import functools
import inspect
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from errors import RoleNotPermitted
from models import db, AuditLog, AuditOutcome

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClientInfo:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class DatabaseAuditSink:
    """Writes one audit_logs row per call, in its own commit."""

    def record(self, respondent_id, action, description, category, client,
               outcome, error_detail=None):
        client = client or ClientInfo()
        entry = AuditLog(
            respondent_id=respondent_id,
            action=action,
            description=description,
            category=category,
            ip_address=client.ip_address[:45] if client.ip_address else None,
            user_agent=client.user_agent[:500] if client.user_agent else None,
            outcome=outcome,
            error_detail=error_detail,
        )
        try:
            db.session.add(entry)
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise
        return entry


class NullAuditSink:
    def record(self, *args, **kwargs):
        return None


def _emit(sink, **fields):
    try:
        sink.record(**fields)
    except Exception:
        logger.warning("audit record for %s dropped", fields.get("action"), exc_info=True)


def audited(action, category="GENERAL", describe=None):
    """
    Audit a service method.

    The wrapped method's bound arguments feed the record: `respondent_id` is
    used directly, otherwise `group_id` is resolved through the owner's
    `audit_respondent_for()`; `client` supplies IP and user agent; `describe`
    is a format string over the arguments.
    """
    def deco(fn):
        signature = inspect.signature(fn)

        @functools.wraps(fn)
        def wrapper(self, *args, **kwargs):
            bound = signature.bind(self, *args, **kwargs)
            bound.apply_defaults()
            params = {k: v for k, v in bound.arguments.items() if k != "self"}

            respondent_id = params.get("respondent_id")
            if respondent_id is None and params.get("group_id") is not None:
                respondent_id = self.audit_respondent_for(params["group_id"])
            if describe:
                description = describe.format(**params)
            else:
                description = f"{action} via {fn.__name__}"
            record = dict(
                respondent_id=respondent_id,
                action=action,
                description=description,
                category=category,
                client=params.get("client"),
            )

            try:
                result = fn(self, *args, **kwargs)
            except RoleNotPermitted as exc:
                _emit(self.audit, outcome=AuditOutcome.DENIED, error_detail=str(exc), **record)
                raise
            except Exception as exc:
                _emit(self.audit, outcome=AuditOutcome.FAILURE, error_detail=str(exc), **record)
                raise
            _emit(self.audit, outcome=AuditOutcome.SUCCESS, **record)
            return result
        return wrapper
    return deco
