import os
import logging
from dataclasses import replace
from datetime import datetime, timedelta
from functools import wraps

from flask import Flask, request, jsonify, session, send_file, g
from sqlalchemy import func, or_

from database import db
from errors import CaptureError, DuplicateConflict, RateLimited
from models import (
    POLICY_FIELDS, CommunityRecord, CommunityReport, CommunityVerification, Item, Store, User, Wishlist,
)
from capture.agent import build_bookmarklet
from capture.sessions import CapturePayload, CaptureSessionStore, fit_to_bytes
from capture.tokens import TokenIssuer
from records.duplicates import SubmissionState, advance, check, normalize_url
from records.merge import COMMUNITY, MANUAL, SCRAPE, MergedRecord, is_empty, merge, reimport
from records.policy import clean_policy_fields
from scraper.content_analyzer import ContentAnalyzer
from scraper.results import ScrapeResult
from scraper.web_crawler import PRICE_MATCH_PATHS, RETURN_POLICY_PATHS, WebCrawler, clean_domain
from utils.file_manager import FileManager
from utils.image_downloader import ImageDownloader
from utils.rate_limiter import RateLimiter

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Initialize Flask app
app = Flask(__name__)
app.secret_key = os.environ.get("FLASK_SECRET_KEY") or "wishlist_capture_key"
app.config["SQLALCHEMY_DATABASE_URI"] = os.environ.get("DATABASE_URL", "sqlite:///wishlist.db")
app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
app.config["CAPTURE_TOKEN_TTL_DAYS"] = int(os.environ.get("CAPTURE_TOKEN_TTL_DAYS", 90))
app.config["CAPTURE_SESSION_TTL_MINUTES"] = int(os.environ.get("CAPTURE_SESSION_TTL_MINUTES", 10))
app.config["PUBLIC_API_URL"] = os.environ.get("PUBLIC_API_URL")
app.config["DATA_DIR"] = os.environ.get("DATA_DIR") or os.path.join(os.getcwd(), 'data')
app.config["MAX_CAPTURE_BYTES"] = int(os.environ.get("MAX_CAPTURE_BYTES", 1024 * 1024))
app.config["MAX_IMAGE_BYTES"] = int(os.environ.get("MAX_IMAGE_BYTES", 5 * 1024 * 1024))

db.init_app(app)

# Initialize components
token_issuer = TokenIssuer(db, ttl=timedelta(days=app.config["CAPTURE_TOKEN_TTL_DAYS"]))
session_store = CaptureSessionStore(db, token_issuer, ttl=timedelta(minutes=app.config["CAPTURE_SESSION_TTL_MINUTES"]))
content_analyzer = ContentAnalyzer()
web_crawler = WebCrawler(content_analyzer)
file_manager = FileManager(app.config["DATA_DIR"])
image_downloader = ImageDownloader(file_manager, max_bytes=app.config["MAX_IMAGE_BYTES"])
submit_limiter = RateLimiter(10, 60)
policy_scrape_limiter = RateLimiter(10, 60 * 60)

ITEM_FIELDS = ('product_name', 'brand', 'price', 'sale_price', 'currency', 'original_url', 'site_name', 'image_url', 'notes')
REPORT_REASONS = ('outdated', 'incorrect', 'spam', 'other')
CORS_PATHS = ('/api/capture/submit',)


def error_response(error, details, status):
    return jsonify({'error': error, 'details': details}), status


def json_body():
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else None


def require_user(view):
    """Primary (cookie) session guard; the capture token never reaches these routes"""
    @wraps(view)
    def wrapper(*args, **kwargs):
        user_id = session.get('user_id')
        if user_id is None or db.session.get(User, user_id) is None:
            return error_response('Authentication required', 'Please sign in', 401)
        g.user_id = user_id
        return view(*args, **kwargs)
    return wrapper


@app.errorhandler(CaptureError)
def handle_capture_error(e):
    return jsonify(e.to_dict()), e.status_code


@app.after_request
def allow_capture_origin(response):
    # The agent runs on arbitrary origins and never sends cookies
    if request.path in CORS_PATHS:
        response.headers['Access-Control-Allow-Origin'] = '*'
        response.headers['Access-Control-Allow-Methods'] = 'POST, OPTIONS'
        response.headers['Access-Control-Allow-Headers'] = 'Content-Type'
        response.headers['Access-Control-Max-Age'] = '600'
    return response


@app.route('/api/session', methods=['POST'])
def sign_in():
    """Start a primary session for a username, creating the user on first use"""
    body = json_body() or {}
    username = (body.get('username') or '').strip()
    if not username or len(username) > 120:
        return error_response('Invalid username', 'A username of at most 120 characters is required', 400)

    user = db.session.execute(db.select(User).filter_by(username=username)).scalar_one_or_none()
    if user is None:
        user = User(username=username)
        db.session.add(user)
        db.session.commit()
        logger.info(f"Created user {user.id}")
    session['user_id'] = user.id
    return jsonify({'id': user.id, 'username': user.username})


# Capture

@app.route('/api/capture-tokens', methods=['POST'])
@require_user
def generate_capture_token():
    """Issue a fresh capture token; every earlier token of this user stops working"""
    token = token_issuer.issue(g.user_id)
    api_url = app.config["PUBLIC_API_URL"] or request.host_url.rstrip('/')
    body = token.to_dict()
    body['bookmarklet'] = build_bookmarklet(api_url, token.token, app.config["MAX_CAPTURE_BYTES"])
    return jsonify(body), 201


@app.route('/api/capture/submit', methods=['POST'])
def submit_capture():
    """Receive a page from the injected agent"""
    client = request.remote_addr or 'unknown'
    if not submit_limiter.allow(client):
        raise RateLimited('Too many captures, please wait a minute and try again')

    body = json_body()
    if body is None:
        return error_response('Invalid request', 'Expected a JSON body', 400)

    token_issuer.validate(body.get('token'))

    source_url = body.get('sourceUrl')
    content = body.get('capturedContent') or ''
    agent_fields = body.get('fields') or {}
    if not isinstance(source_url, str) or not web_crawler.is_valid_url(source_url):
        return error_response('Invalid request', 'sourceUrl must be an http(s) URL', 400)
    if not isinstance(content, str) or not isinstance(agent_fields, dict):
        return error_response('Invalid request', 'capturedContent must be a string and fields an object', 400)
    content, truncated = fit_to_bytes(content, app.config["MAX_CAPTURE_BYTES"])

    try:
        payload = CapturePayload(source_url, content, body.get('captureKind'), agent_fields)
    except ValueError as e:
        return error_response('Invalid request', str(e), 400)

    result = content_analyzer.analyze(content, payload.capture_kind, source_url=source_url, agent_fields=agent_fields)
    if truncated:
        logger.info(f"Truncated oversized capture from {source_url} to {app.config['MAX_CAPTURE_BYTES']} bytes")
        result = replace(result, warnings=result.warnings + ('Page was too large and only its first part was analyzed',))
    session_id = session_store.create(body['token'], payload, result)
    session_store.expire_stale()

    return jsonify({
        'sessionId': session_id,
        'result': {
            'success': result.success,
            'confidence': result.confidence,
            'fieldCount': len(result.fields),
            'warnings': list(result.warnings),
        },
    }), 201


@app.route('/api/capture/result')
def capture_result():
    """Hand the capture to the polling tab, once"""
    retrieved = session_store.retrieve(request.args.get('sessionId'), request.args.get('token'))
    return jsonify({
        'sessionId': retrieved.session_id,
        'sourceUrl': retrieved.payload.source_url,
        'captureKind': retrieved.payload.capture_kind,
        'result': retrieved.result.to_dict(),
        'record': retrieved.result.as_record(),
    })


# Wishlists and items

@app.route('/api/wishlists', methods=['GET', 'POST'])
@require_user
def wishlists():
    if request.method == 'GET':
        rows = db.session.execute(
            db.select(Wishlist).filter_by(user_id=g.user_id).order_by(Wishlist.id)
        ).scalars()
        return jsonify({'wishlists': [wishlist.to_dict() for wishlist in rows]})

    body = json_body() or {}
    name = (body.get('name') or '').strip()
    if not name:
        return error_response('Invalid request', 'name is required', 400)
    wishlist = Wishlist(user_id=g.user_id, name=name[:200])
    db.session.add(wishlist)
    db.session.commit()
    return jsonify(wishlist.to_dict()), 201


def owned_wishlist(wishlist_id):
    return db.session.execute(
        db.select(Wishlist).filter_by(id=wishlist_id, user_id=g.user_id)
    ).scalar_one_or_none()


@app.route('/api/wishlists/<int:wishlist_id>/items')
@require_user
def wishlist_items(wishlist_id):
    wishlist = owned_wishlist(wishlist_id)
    if wishlist is None:
        return error_response('Not found', 'Wishlist not found', 404)
    return jsonify({'items': [item.to_dict() for item in wishlist.items]})


def candidate_from(body):
    """Pick item fields out of a request body; raises ValueError on unusable values"""
    candidate = {}
    for name in ITEM_FIELDS:
        value = body.get(name)
        if is_empty(value):
            continue
        if name in ('price', 'sale_price'):
            try:
                value = float(value)
            except (TypeError, ValueError):
                raise ValueError(f"{name} must be a number")
            if value < 0:
                raise ValueError(f"{name} must not be negative")
        elif not isinstance(value, str):
            raise ValueError(f"{name} must be a string")
        candidate[name] = value
    return candidate


@app.route('/api/items', methods=['POST'])
@require_user
def add_item():
    """Insert an item unless it duplicates one already in the wishlist (forceAdd bypasses the check)"""
    body = json_body()
    if body is None:
        return error_response('Invalid request', 'Expected a JSON body', 400)
    wishlist = owned_wishlist(body.get('wishlistId') or body.get('wishlist_id'))
    if wishlist is None:
        return error_response('Not found', 'Wishlist not found', 404)

    try:
        candidate = candidate_from(body)
    except ValueError as e:
        return error_response('Invalid request', str(e), 400)

    warnings = []
    if not candidate.get('product_name') and candidate.get('original_url'):
        logger.info(f"No product name given, scraping {candidate['original_url']}")
        scraped = web_crawler.fetch_product(candidate['original_url'])
        warnings.extend(scraped.warnings)
        candidate = merge(manual=candidate, scraped=scraped.as_record(), allowed=ITEM_FIELDS).fields
    if not candidate.get('product_name'):
        return error_response('Invalid request', 'product_name is required', 400)

    state = SubmissionState.SUBMITTED
    if not body.get('forceAdd'):
        state = advance(state, SubmissionState.DUPLICATE_CHECK)
        existing = [dict(item.to_dict(), canonical_url=item.canonical_url) for item in wishlist.items]
        duplicates = check(candidate, existing)
        if duplicates.is_duplicate:
            state = advance(state, SubmissionState.AWAITING_CONFIRMATION)
            logger.info(f"Item submission {state.value}: {duplicates.type} duplicate of "
                        f"{[match['id'] for match in duplicates.matches]}")
            raise_duplicate(duplicates, candidate)
    state = advance(state, SubmissionState.INSERTED)

    item = Item(
        wishlist_id=wishlist.id,
        product_name=candidate['product_name'][:500],
        brand=candidate.get('brand'),
        price=candidate.get('price'),
        sale_price=candidate.get('sale_price'),
        currency=candidate.get('currency') or 'USD',
        original_url=candidate.get('original_url'),
        canonical_url=normalize_url(candidate.get('original_url')),
        site_name=candidate.get('site_name'),
        notes=candidate.get('notes'),
    )
    try:
        db.session.add(item)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Failed to insert item: {str(e)}", exc_info=True)
        return jsonify({'error': 'Failed to add item', 'details': str(e), 'type': type(e).__name__}), 500
    logger.info(f"Item {item.id} {state.value} into wishlist {wishlist.id}{' (forced)' if body.get('forceAdd') else ''}")

    image_path = image_downloader.download(candidate.get('image_url'))
    if image_path:
        item.image_path = image_path
        db.session.commit()

    response = item.to_dict()
    if warnings:
        response['warnings'] = warnings
    return jsonify(response), 201


def raise_duplicate(duplicates, candidate):
    matches = [{key: value for key, value in match.items() if key != 'canonical_url'} for match in duplicates.matches]
    raise DuplicateConflict(duplicates.type, matches, candidate)


@app.route('/api/images/<path:filename>')
@require_user
def get_image(filename):
    """Serve a downloaded item image"""
    abs_path = file_manager.resolve(filename)
    if abs_path is None:
        return error_response('Invalid file path', 'Path escapes the data directory', 403)
    if not os.path.isfile(abs_path):
        return error_response('File not found', filename, 404)
    return send_file(abs_path)


# Stores

def policy_values(body):
    """Policy fields present in a request body, type and range checked (ValueError on bad input)"""
    return clean_policy_fields(body, POLICY_FIELDS)


def owned_store(store_id):
    return db.session.execute(
        db.select(Store).filter_by(id=store_id, user_id=g.user_id)
    ).scalar_one_or_none()


def apply_merge(store, merged):
    for name in POLICY_FIELDS:
        setattr(store, name, merged.fields.get(name))
    store.field_sources = dict(merged.sources)


def current_record(store):
    fields = {name: value for name, value in store.policy_fields().items() if not is_empty(value)}
    sources = store.field_sources or {}
    # anything without recorded provenance was entered by hand
    return MergedRecord(fields, {name: sources.get(name, MANUAL) for name in fields})


@app.route('/api/stores', methods=['POST'])
@require_user
def create_store():
    body = json_body() or {}
    name = (body.get('name') or '').strip()
    if not name:
        return error_response('Invalid request', 'name is required', 400)
    domain = body.get('domain')
    if domain and not clean_domain(domain):
        return error_response('Invalid request', 'Invalid domain format', 400)

    try:
        manual = policy_values(body)
    except ValueError as e:
        return error_response('Invalid request', str(e), 400)

    store = Store(user_id=g.user_id, name=name[:200], domain=clean_domain(domain) if domain else None)
    apply_merge(store, merge(manual=manual, allowed=POLICY_FIELDS))
    db.session.add(store)
    db.session.commit()
    return jsonify(store.to_dict()), 201


@app.route('/api/stores/<int:store_id>')
@require_user
def get_store(store_id):
    store = owned_store(store_id)
    if store is None:
        return error_response('Not found', 'Store not found', 404)
    return jsonify(store.to_dict())


@app.route('/api/stores/<int:store_id>/merge', methods=['POST'])
@require_user
def merge_store(store_id):
    """
    Re-merge a store from newly typed fields, a community record and/or a scrape.

    Fields typed now join the store's manual fields; manual fields are never
    replaced by community or scraped values.
    """
    store = owned_store(store_id)
    if store is None:
        return error_response('Not found', 'Store not found', 404)
    body = json_body() or {}

    current = current_record(store)
    manual = current.fields_from(MANUAL)
    try:
        manual.update(policy_values(body.get('manualFields') or {}))
    except ValueError as e:
        return error_response('Invalid request', str(e), 400)

    community = current.fields_from(COMMUNITY)
    record = None
    if body.get('communityRecordId') is not None:
        record = db.session.get(CommunityRecord, body['communityRecordId'])
        if record is None:
            return error_response('Not found', 'Community record not found', 404)
        community.update({name: value for name, value in record.policy_fields().items() if not is_empty(value)})

    scraped = current.fields_from(SCRAPE)
    if body.get('scrapeResult') is not None:
        try:
            scraped = policy_values(ScrapeResult.from_dict(body['scrapeResult']).as_record())
        except (TypeError, ValueError) as e:
            return error_response('Invalid request', f"Unusable scrapeResult: {str(e)}", 400)

    merged = merge(manual, community, scraped, allowed=POLICY_FIELDS)
    try:
        apply_merge(store, merged)
        if record is not None:
            store.imported_from_id = record.id
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info(f"Merged store {store.id}: {len(merged.fields)} fields")
    return jsonify(store.to_dict())


@app.route('/api/stores/scrape-policy', methods=['POST'])
@require_user
def scrape_store_policy():
    """Discover and analyze a store's policy pages server-side"""
    body = json_body() or {}
    domain = clean_domain(body.get('domain'))
    if not domain:
        return error_response('Invalid request', 'Invalid domain format', 400)
    if not policy_scrape_limiter.allow(g.user_id):
        raise RateLimited('Too many policy scrapes, please try again later')

    try:
        result = web_crawler.scrape_policies(domain)
    except Exception as e:
        logger.error(f"Policy scrape for {domain} failed: {str(e)}", exc_info=True)
        return jsonify({'error': 'Failed to scrape policy', 'details': str(e), 'type': type(e).__name__}), 500

    response = result.to_dict()
    response['record'] = result.as_record() if result.success else {}
    return jsonify(response)


@app.route('/api/stores/policy-paths')
def policy_paths():
    return jsonify({'returnPolicy': RETURN_POLICY_PATHS, 'priceMatch': PRICE_MATCH_PATHS})


# Community records

@app.route('/api/community-records')
@require_user
def search_community_records():
    search = (request.args.get('search') or '').strip()
    try:
        limit = min(max(int(request.args.get('limit', 20)), 1), 50)
        offset = max(int(request.args.get('offset', 0)), 0)
    except ValueError:
        return error_response('Invalid request', 'limit and offset must be integers', 400)

    query = db.select(CommunityRecord)
    if search:
        pattern = f"%{search.lower()}%"
        query = query.where(or_(func.lower(CommunityRecord.name).like(pattern), CommunityRecord.domain.like(pattern)))
    total = db.session.execute(db.select(func.count()).select_from(query.subquery())).scalar_one()
    records = db.session.execute(
        query.order_by(CommunityRecord.verified_count.desc(), CommunityRecord.id).limit(limit).offset(offset)
    ).scalars()
    return jsonify({'records': [record.to_dict() for record in records], 'total': total})


@app.route('/api/community-records/domain/<domain>')
@require_user
def community_record_by_domain(domain):
    cleaned = clean_domain(domain)
    record = db.session.execute(
        db.select(CommunityRecord).filter_by(domain=cleaned)
    ).scalar_one_or_none() if cleaned else None
    if record is None:
        return error_response('Not found', 'No community record for this domain', 404)
    return jsonify(record.to_dict())


@app.route('/api/community-records', methods=['POST'])
@require_user
def contribute_community_record():
    body = json_body() or {}
    domain = clean_domain(body.get('domain'))
    name = (body.get('name') or '').strip()
    if not domain or not name:
        return error_response('Invalid request', 'A valid domain and name are required', 400)
    if db.session.execute(db.select(CommunityRecord.id).filter_by(domain=domain)).first():
        return error_response('Conflict', 'A community record for this domain already exists', 409)

    try:
        values = policy_values(body)
    except ValueError as e:
        return error_response('Invalid request', str(e), 400)

    record = CommunityRecord(domain=domain, name=name[:200], contributed_by=g.user_id)
    for field, value in values.items():
        setattr(record, field, value)
    try:
        db.session.add(record)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info(f"User {g.user_id} contributed community record for {domain}")
    return jsonify(record.to_dict()), 201


def recount(record):
    record.verified_count = db.session.execute(
        db.select(func.count()).select_from(CommunityVerification)
        .filter_by(policy_id=record.id, is_accurate=True)
    ).scalar_one()
    record.report_count = db.session.execute(
        db.select(func.count()).select_from(CommunityReport).filter_by(policy_id=record.id)
    ).scalar_one()


@app.route('/api/community-records/<int:record_id>/verify', methods=['POST'])
@require_user
def verify_community_record(record_id):
    record = db.session.get(CommunityRecord, record_id)
    if record is None:
        return error_response('Not found', 'Community record not found', 404)
    body = json_body() or {}
    is_accurate = body.get('isAccurate', True)
    if not isinstance(is_accurate, bool):
        return error_response('Invalid request', 'isAccurate must be a boolean', 400)

    verification = db.session.execute(
        db.select(CommunityVerification).filter_by(policy_id=record.id, user_id=g.user_id)
    ).scalar_one_or_none()
    if verification is None:
        verification = CommunityVerification(policy_id=record.id, user_id=g.user_id, is_accurate=is_accurate)
        db.session.add(verification)
    verification.is_accurate = is_accurate
    verification.notes = body.get('notes')
    db.session.flush()
    recount(record)
    if is_accurate:
        record.last_verified_at = datetime.utcnow()
    db.session.commit()
    return jsonify(record.to_dict())


@app.route('/api/community-records/<int:record_id>/report', methods=['POST'])
@require_user
def report_community_record(record_id):
    record = db.session.get(CommunityRecord, record_id)
    if record is None:
        return error_response('Not found', 'Community record not found', 404)
    body = json_body() or {}
    reason = body.get('reason')
    if reason not in REPORT_REASONS:
        return error_response('Invalid request', f"reason must be one of: {', '.join(REPORT_REASONS)}", 400)

    db.session.add(CommunityReport(policy_id=record.id, user_id=g.user_id, reason=reason, details=body.get('details')))
    db.session.flush()
    recount(record)
    db.session.commit()
    logger.info(f"Community record {record.id} reported as {reason}")
    return jsonify(record.to_dict())


@app.route('/api/community-records/import/<int:target_id>', methods=['POST'])
@require_user
def import_community_record(target_id):
    """Import a community record into one of the user's stores without touching manual fields"""
    store = owned_store(target_id)
    if store is None:
        return error_response('Not found', 'Store not found', 404)
    body = json_body() or {}
    record_id = body.get('communityRecordId') or body.get('community_policy_id')
    record = db.session.get(CommunityRecord, record_id) if record_id is not None else None
    if record is None:
        return error_response('Not found', 'Community record not found', 404)

    merged = reimport(current_record(store), record.policy_fields(), allowed=POLICY_FIELDS)
    try:
        apply_merge(store, merged)
        store.imported_from_id = record.id
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info(f"Imported community record {record.id} into store {store.id}")
    return jsonify(store.to_dict())


with app.app_context():
    db.create_all()

if __name__ == "__main__":
    app.run(host="0.0.0.0", port=5000, debug=True)
