from database import db
from datetime import datetime

# Structured policy fields shared by a user's store and community records.
POLICY_FIELDS = (
    'return_window_days',
    'free_returns',
    'free_return_shipping',
    'paid_return_cost',
    'restocking_fee_percent',
    'exchange_only',
    'store_credit_only',
    'receipt_required',
    'original_packaging_required',
    'final_sale_items',
    'return_policy_url',
    'return_policy_notes',
    'price_match_window_days',
    'price_match_competitors',
    'price_match_own_sales',
    'price_match_policy_url',
    'price_match_policy_notes',
)


class PolicyColumns:
    # Booleans are nullable: None means "unknown", which the merge treats as empty
    return_window_days = db.Column(db.Integer)
    free_returns = db.Column(db.Boolean)
    free_return_shipping = db.Column(db.Boolean)
    paid_return_cost = db.Column(db.Float)
    restocking_fee_percent = db.Column(db.Float)
    exchange_only = db.Column(db.Boolean)
    store_credit_only = db.Column(db.Boolean)
    receipt_required = db.Column(db.Boolean)
    original_packaging_required = db.Column(db.Boolean)
    final_sale_items = db.Column(db.Boolean)
    return_policy_url = db.Column(db.String(2048))
    return_policy_notes = db.Column(db.Text)
    price_match_window_days = db.Column(db.Integer)
    price_match_competitors = db.Column(db.Boolean)
    price_match_own_sales = db.Column(db.Boolean)
    price_match_policy_url = db.Column(db.String(2048))
    price_match_policy_notes = db.Column(db.Text)

    def policy_fields(self):
        return {field: getattr(self, field) for field in POLICY_FIELDS}


class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(120), unique=True, nullable=False)
    capture_generation = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)


class CaptureToken(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    token = db.Column(db.String(64), unique=True, nullable=False)
    generation = db.Column(db.Integer, nullable=False)
    issued_at = db.Column(db.DateTime, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)

    def to_dict(self):
        return {
            'token': self.token,
            'createdAt': self.issued_at.isoformat(),
            'expiresAt': self.expires_at.isoformat(),
        }


class CaptureSession(db.Model):
    id = db.Column(db.String(32), primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    token_generation = db.Column(db.Integer, nullable=False)
    capture_kind = db.Column(db.String(32), nullable=False)
    source_url = db.Column(db.String(2048))
    content = db.Column(db.Text)
    fields = db.Column(db.JSON)
    result = db.Column(db.JSON)
    status = db.Column(db.String(16), nullable=False, default='pending')
    created_at = db.Column(db.DateTime, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False, index=True)
    consumed_at = db.Column(db.DateTime)


class Wishlist(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    items = db.relationship('Item', backref='wishlist', lazy=True, order_by='Item.id')

    def to_dict(self):
        return {'id': self.id, 'name': self.name, 'created_at': self.created_at.isoformat()}


class Item(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    wishlist_id = db.Column(db.Integer, db.ForeignKey('wishlist.id'), nullable=False, index=True)
    product_name = db.Column(db.String(500), nullable=False)
    brand = db.Column(db.String(200))
    price = db.Column(db.Float)
    sale_price = db.Column(db.Float)
    currency = db.Column(db.String(8), default='USD')
    original_url = db.Column(db.String(2048))
    canonical_url = db.Column(db.String(2048), index=True)
    site_name = db.Column(db.String(200))
    image_path = db.Column(db.String(500))
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'wishlist_id': self.wishlist_id,
            'product_name': self.product_name,
            'brand': self.brand,
            'price': self.price,
            'sale_price': self.sale_price,
            'currency': self.currency,
            'original_url': self.original_url,
            'site_name': self.site_name,
            'image_path': self.image_path,
            'notes': self.notes,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class Store(PolicyColumns, db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False)
    domain = db.Column(db.String(255))
    # field name -> 'manual' | 'community' | 'scrape'
    field_sources = db.Column(db.JSON, default=dict)
    imported_from_id = db.Column(db.Integer, db.ForeignKey('community_store_policies.id'))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        data = {'id': self.id, 'name': self.name, 'domain': self.domain}
        data.update(self.policy_fields())
        data['field_sources'] = dict(self.field_sources or {})
        data['imported_from_id'] = self.imported_from_id
        return data


class CommunityRecord(PolicyColumns, db.Model):
    __tablename__ = 'community_store_policies'

    id = db.Column(db.Integer, primary_key=True)
    domain = db.Column(db.String(255), unique=True, nullable=False)
    name = db.Column(db.String(200), nullable=False)
    contributed_by = db.Column(db.Integer, db.ForeignKey('user.id'))
    verified_count = db.Column(db.Integer, nullable=False, default=0)
    report_count = db.Column(db.Integer, nullable=False, default=0)
    last_verified_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        data = {'id': self.id, 'domain': self.domain, 'name': self.name}
        data.update(self.policy_fields())
        data.update({
            'contributed_by': self.contributed_by,
            'verified_count': self.verified_count,
            'report_count': self.report_count,
            'last_verified_at': self.last_verified_at.isoformat() if self.last_verified_at else None,
        })
        return data


class CommunityVerification(db.Model):
    __table_args__ = (db.UniqueConstraint('policy_id', 'user_id'),)

    id = db.Column(db.Integer, primary_key=True)
    policy_id = db.Column(db.Integer, db.ForeignKey('community_store_policies.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    is_accurate = db.Column(db.Boolean, nullable=False)
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)


class CommunityReport(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    policy_id = db.Column(db.Integer, db.ForeignKey('community_store_policies.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    reason = db.Column(db.String(32), nullable=False)
    details = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
