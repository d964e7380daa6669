"""
数据库连接模块

管理数据库引擎的创建。表结构通过 Alembic 迁移管理，不要在这里建表。
使用前确保已导入 marketplace.models，否则表之间的关系可能无法正确初始化。
"""
from sqlmodel import create_engine

from marketplace.core.config import settings

# pool_pre_ping: worker 长时间运行，连接可能被数据库端关闭
engine = create_engine(str(settings.SQLALCHEMY_DATABASE_URI), pool_pre_ping=True)
