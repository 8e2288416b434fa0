"""SQLAlchemy ORM models.

Amount columns hold exact base-unit decimal strings; timestamps hold ISO-8601
UTC strings with microsecond precision so that string order is time order.
"""

from sqlalchemy import ForeignKey, MetaData, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    metadata = MetaData(naming_convention=convention)


class Blocks(Base):
    __tablename__ = "blocks"

    id: Mapped[str] = mapped_column(primary_key=True)
    chain_id: Mapped[str] = mapped_column(nullable=False)
    height: Mapped[int] = mapped_column(nullable=False, index=True)
    timestamp: Mapped[str] = mapped_column(nullable=False, index=True)
    reward: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    commission: Mapped[str] = mapped_column(Text, nullable=False, default="{}")

    __table_args__ = (UniqueConstraint("chain_id", "height"),)
    txs = relationship("Txs", back_populates="block")


class Txs(Base):
    __tablename__ = "txs"

    id: Mapped[str] = mapped_column(primary_key=True)
    chain_id: Mapped[str] = mapped_column(nullable=False)
    hash: Mapped[str] = mapped_column(nullable=False)
    timestamp: Mapped[str] = mapped_column(nullable=False, index=True)
    data: Mapped[str] = mapped_column(Text, nullable=False)
    block_id: Mapped[str | None] = mapped_column(ForeignKey("blocks.id"))

    __table_args__ = (UniqueConstraint("chain_id", "hash"),)
    block = relationship("Blocks", back_populates="txs")
    accounts = relationship(
        "AccountTxs",
        back_populates="tx",
        cascade="all, delete-orphan",
    )


class AccountTxs(Base):
    __tablename__ = "account_txs"

    id: Mapped[str] = mapped_column(primary_key=True)
    account: Mapped[str] = mapped_column(nullable=False, index=True)
    chain_id: Mapped[str] = mapped_column(nullable=False)
    hash: Mapped[str] = mapped_column(nullable=False)
    tx_id: Mapped[str] = mapped_column(ForeignKey("txs.id"), nullable=False, index=True)
    timestamp: Mapped[str] = mapped_column(nullable=False)

    __table_args__ = (UniqueConstraint("account", "tx_id"),)
    tx = relationship("Txs", back_populates="accounts")


class Rewards(Base):
    __tablename__ = "rewards"

    id: Mapped[str] = mapped_column(primary_key=True)
    denom: Mapped[str] = mapped_column(nullable=False)
    datetime: Mapped[str] = mapped_column(nullable=False)
    tax: Mapped[str] = mapped_column(nullable=False, default="0")
    tax_usd: Mapped[str] = mapped_column(nullable=False, default="0")
    gas: Mapped[str] = mapped_column(nullable=False, default="0")
    gas_usd: Mapped[str] = mapped_column(nullable=False, default="0")
    sum: Mapped[str] = mapped_column(nullable=False, default="0")
    commission: Mapped[str] = mapped_column(nullable=False, default="0")
    oracle: Mapped[str] = mapped_column(nullable=False, default="0")
    oracle_usd: Mapped[str] = mapped_column(nullable=False, default="0")
    updated_at: Mapped[str] = mapped_column(nullable=False)

    __table_args__ = (UniqueConstraint("denom", "datetime"),)


class Prices(Base):
    __tablename__ = "prices"

    id: Mapped[str] = mapped_column(primary_key=True)
    denom: Mapped[str] = mapped_column(nullable=False)
    datetime: Mapped[str] = mapped_column(nullable=False, index=True)
    price: Mapped[str] = mapped_column(nullable=False)

    __table_args__ = (UniqueConstraint("denom", "datetime"),)
