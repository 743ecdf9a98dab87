from sqlalchemy import BigInteger, Boolean, Column, Float, Index, Integer, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class RoundRecord(Base):
    __tablename__ = "rounds"

    round              = Column(BigInteger, primary_key=True, autoincrement=False)
    start_timestamp    = Column(BigInteger, nullable=False)
    end_timestamp      = Column(BigInteger, nullable=False)
    controller_address = Column(String(42), nullable=True)
    auction_kind       = Column(String(16), nullable=False, default="unknown")
    winner             = Column(String(42), nullable=True)
    winning_amount     = Column(Text, nullable=True)        # wei, decimal string
    price_paid         = Column(Text, nullable=True)        # wei, decimal string
    resolution_ref     = Column(String(66), nullable=True)  # AuctionResolved tx hash
    start_block        = Column(BigInteger, nullable=True)
    end_block          = Column(BigInteger, nullable=True)
    indexed            = Column(Boolean, nullable=False, default=False)
    indexed_at         = Column(Float, nullable=True)       # epoch seconds
    created_at         = Column(Float, nullable=True)

    __table_args__ = (
        Index("ix_rounds_indexed", "indexed"),
    )

    def __repr__(self) -> str:
        return f"<Round {self.round} indexed={self.indexed} blocks={self.start_block}-{self.end_block}>"


class IndexingStatusRecord(Base):
    __tablename__ = "indexing_status"

    round             = Column(BigInteger, primary_key=True, autoincrement=False)
    status            = Column(String(16), nullable=False)  # pending / indexing / completed / failed
    attempts          = Column(Integer, nullable=False, default=0)
    transaction_count = Column(Integer, nullable=False, default=0)
    started_at        = Column(Float, nullable=True)
    completed_at      = Column(Float, nullable=True)
    error             = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_indexing_status_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<IndexingStatus {self.round} {self.status}>"


class BoostedTransactionRecord(Base):
    __tablename__ = "boosted_transactions"

    hash                = Column(String(66), primary_key=True)
    round               = Column(BigInteger, nullable=False)
    block_number        = Column(BigInteger, nullable=False)
    transaction_index   = Column(Integer, nullable=False, default=0)
    timestamp           = Column(BigInteger, nullable=False)
    from_address        = Column(String(42), nullable=False)
    to_address          = Column(String(42), nullable=False, default="")
    value               = Column(Text, nullable=False)
    gas_used            = Column(Text, nullable=False)
    effective_gas_price = Column(Text, nullable=False)

    __table_args__ = (
        Index("ix_boosted_transactions_round", "round"),
        Index("ix_boosted_transactions_block", "block_number"),
    )

    def __repr__(self) -> str:
        return f"<BoostedTx {self.hash} round={self.round} block={self.block_number}>"
