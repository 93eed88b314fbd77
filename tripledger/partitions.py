from collections.abc import Mapping
import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from tripledger.db_models import Broker, BrokerAccount, Opco
from tripledger.errors import PartitionInvalidError, PartitionMissingError
from tripledger.schemas import PartitionKey


logger = logging.getLogger(__name__)


def resolve_partition(db: Session, opco_code: str | None, broker_account_code: str | None) -> PartitionKey:
    opco_code = (opco_code or "").strip()
    broker_account_code = (broker_account_code or "").strip()
    if not opco_code or not broker_account_code:
        raise PartitionMissingError("an operating company and a broker account are required for every import")

    opco = db.execute(select(Opco).where(Opco.code == opco_code)).scalar_one_or_none()
    if opco is None or not opco.is_active:
        raise PartitionInvalidError(f"unknown or inactive operating company: {opco_code}")

    account = db.execute(
        select(BrokerAccount).where(BrokerAccount.code == broker_account_code)
    ).scalar_one_or_none()
    if account is None or not account.is_active:
        raise PartitionInvalidError(f"unknown or inactive broker account: {broker_account_code}")
    if not account.broker.is_active:
        raise PartitionInvalidError(f"broker {account.broker.code} is inactive")
    if account.opco_id is not None and account.opco_id != opco.id:
        raise PartitionInvalidError(
            f"broker account {broker_account_code} does not belong to operating company {opco_code}"
        )

    return PartitionKey(
        opco_code=opco.code,
        broker_code=account.broker.code,
        broker_account_code=account.code,
    )


def load_reference_data(db: Session, payload: Mapping[str, list[Mapping[str, object]]]) -> dict[str, int]:
    """Upsert opcos, brokers and broker accounts keyed by code.

    Reference data is owned by the admin surface; this exists for seeding
    environments and tests. Accounts name their broker and, optionally, their
    opco by code.
    """
    counts = {"opcos": 0, "brokers": 0, "broker_accounts": 0}

    for item in payload.get("opcos", []):
        opco = db.execute(select(Opco).where(Opco.code == item["code"])).scalar_one_or_none()
        if opco is None:
            opco = Opco(code=str(item["code"]), name=str(item.get("name", item["code"])))
            db.add(opco)
        opco.name = str(item.get("name", opco.name))
        opco.is_active = bool(item.get("is_active", True))
        counts["opcos"] += 1

    for item in payload.get("brokers", []):
        broker = db.execute(select(Broker).where(Broker.code == item["code"])).scalar_one_or_none()
        if broker is None:
            broker = Broker(code=str(item["code"]), name=str(item.get("name", item["code"])))
            db.add(broker)
        broker.name = str(item.get("name", broker.name))
        broker.is_active = bool(item.get("is_active", True))
        counts["brokers"] += 1
    db.flush()

    for item in payload.get("broker_accounts", []):
        broker = db.execute(select(Broker).where(Broker.code == item["broker"])).scalar_one_or_none()
        if broker is None:
            raise ValueError(f"broker account {item['code']} references unknown broker {item['broker']}")

        opco_id = None
        if item.get("opco"):
            opco = db.execute(select(Opco).where(Opco.code == item["opco"])).scalar_one_or_none()
            if opco is None:
                raise ValueError(f"broker account {item['code']} references unknown opco {item['opco']}")
            opco_id = opco.id

        account = db.execute(
            select(BrokerAccount).where(BrokerAccount.code == item["code"])
        ).scalar_one_or_none()
        if account is None:
            account = BrokerAccount(code=str(item["code"]), name=str(item.get("name", item["code"])), broker_id=broker.id)
            db.add(account)
        account.name = str(item.get("name", account.name))
        account.broker_id = broker.id
        account.opco_id = opco_id
        account.is_active = bool(item.get("is_active", True))
        counts["broker_accounts"] += 1

    db.commit()
    logger.info("reference data loaded", extra=counts)
    return counts
