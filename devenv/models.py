from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base

ENV_RUNNING = "running"
ENV_STOPPED = "stopped"
ENV_ERROR = "error"


class Project(Base):
    __tablename__ = "projects"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), unique=True, nullable=False)
    repo_path = Column(Text, nullable=False)
    status = Column(String(32), nullable=False, server_default=text("'active'"))  # active, archived
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    environments = relationship(
        "Environment",
        back_populates="project",
        order_by="Environment.name",
    )


class Environment(Base):
    __tablename__ = "environments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False)
    name = Column(String(255), unique=True, nullable=False)
    branch = Column(String(255), nullable=False)
    status = Column(String(32), nullable=False, server_default=text("'created'"))  # created, running, stopped, error
    container_id = Column(String(128), nullable=True)
    worktree_path = Column(Text, nullable=True)
    runtime_config = Column(Text, nullable=True)  # devcontainer descriptor as JSON
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    project = relationship("Project", back_populates="environments")
    port_mappings = relationship(
        "PortMapping",
        back_populates="environment",
        order_by="PortMapping.container_port",
    )
    env_files = relationship(
        "EnvFile",
        back_populates="environment",
        order_by="EnvFile.relative_path",
    )


class EnvFile(Base):
    __tablename__ = "env_files"
    __table_args__ = (UniqueConstraint("environment_id", "relative_path", name="uq_env_files_environment_path"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    environment_id = Column(Integer, ForeignKey("environments.id"), nullable=False)
    relative_path = Column(Text, nullable=False)
    content = Column(Text, nullable=False)

    environment = relationship("Environment", back_populates="env_files")


class PortMapping(Base):
    __tablename__ = "port_mappings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    environment_id = Column(Integer, ForeignKey("environments.id"), nullable=False)
    container_port = Column(Integer, nullable=False)
    host_port = Column(Integer, unique=True, nullable=False)
    hostname = Column(String(255), unique=True, nullable=False)

    environment = relationship("Environment", back_populates="port_mappings")


class Setting(Base):
    __tablename__ = "settings"

    key = Column(String(100), primary_key=True)
    value = Column(Text, nullable=False)
