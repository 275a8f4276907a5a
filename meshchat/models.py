from datetime import datetime

from .extensions import db


class DocumentRecord(db.Model):
    """One document of a replicated collection, stored as a JSON body."""

    __tablename__ = "documents"
    __table_args__ = (db.UniqueConstraint("collection", "doc_id", name="uq_collection_doc"),)
    id = db.Column(db.Integer, primary_key=True)
    collection = db.Column(db.String(128), nullable=False, index=True)
    doc_id = db.Column(db.String(128), nullable=False)
    body = db.Column(db.JSON, nullable=False, default=dict)
    # removals replicate, so a removed document stays behind as a tombstone
    is_deleted = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class LocalPreference(db.Model):
    """Device-local key/value entry; never replicated."""

    __tablename__ = "local_preferences"
    key = db.Column(db.String(128), primary_key=True)
    value = db.Column(db.JSON)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class AttachmentBlob(db.Model):
    __tablename__ = "attachments"
    id = db.Column(db.Integer, primary_key=True)
    token = db.Column(db.String(64), unique=True, nullable=False, index=True)
    stored_path = db.Column(db.String(255), nullable=False)
    meta = db.Column(db.JSON, default=dict)
    size_bytes = db.Column(db.Integer)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
