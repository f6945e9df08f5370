from sqlalchemy import Column, Integer, String, Text, ForeignKey, UniqueConstraint
from app import db


class BuildLog(db.Model):
    """构建日志行，只追加不修改"""
    __tablename__ = 'build_logs'
    __table_args__ = (
        UniqueConstraint('build_id', 'seq', name='uq_build_logs_build_seq'),
    )

    id = Column(Integer, primary_key=True)
    build_id = Column(String(32), ForeignKey('builds.id'), nullable=False, index=True)
    seq = Column(Integer, nullable=False)  # 构建内从1开始的行号
    content = Column(Text, nullable=False, default='')

    def __repr__(self):
        return f'<BuildLog {self.build_id}#{self.seq}>'
