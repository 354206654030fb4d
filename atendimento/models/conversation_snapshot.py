from sqlalchemy import Column, DateTime, Integer, String, Text, UniqueConstraint, func

from atendimento.core.database import Base


class ConversationSnapshot(Base):
    __tablename__ = "conversation_snapshots"

    id = Column(Integer, primary_key=True)
    kind = Column(String, nullable=False, index=True)
    key = Column(String, nullable=False)
    payload_json = Column(Text, nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (UniqueConstraint("kind", "key", name="uq_conversation_snapshots_kind_key"),)
