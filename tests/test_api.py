"""End-to-end tests through the Flask routes."""

from unittest import mock

import pytest

import app as wishlist_app
from database import db
from models import CommunityRecord
from scraper.results import ScrapedField, ScrapeResult

POLICY_PAGE = "<html><body><main>Returns accepted within 30 days, free return shipping</main></body></html>"


@pytest.fixture
def capture_token(client):
    response = client.post('/api/capture-tokens')
    assert response.status_code == 201
    return response.get_json()['token']


@pytest.fixture
def wishlist_id(client):
    response = client.post('/api/wishlists', json={'name': 'Birthday'})
    assert response.status_code == 201
    return response.get_json()['id']


def submit(anonymous_client, token, content=POLICY_PAGE, kind='return_policy', **extra):
    body = {
        'token': token,
        'sourceUrl': 'https://store.example/returns',
        'capturedContent': content,
        'captureKind': kind,
    }
    body.update(extra)
    return anonymous_client.post('/api/capture/submit', json=body)


class TestCaptureFlow:
    def test_token_response_carries_bookmarklet(self, client):
        response = client.post('/api/capture-tokens')
        body = response.get_json()

        assert response.status_code == 201
        assert set(body) == {'token', 'createdAt', 'expiresAt', 'bookmarklet'}
        assert body['bookmarklet'].startswith('javascript:')
        assert body['token'] in body['bookmarklet']

    def test_token_requires_primary_session(self, anonymous_client):
        assert anonymous_client.post('/api/capture-tokens').status_code == 401

    def test_submit_then_poll_once(self, client, anonymous_client, capture_token):
        """The agent delivers, the tab polls once and gets the result, then not found."""
        response = submit(anonymous_client, capture_token)
        assert response.status_code == 201
        assert response.headers['Access-Control-Allow-Origin'] == '*'
        body = response.get_json()
        assert len(body['sessionId']) == 32
        assert body['result']['fieldCount'] >= 2

        params = {'sessionId': body['sessionId'], 'token': capture_token}
        first = client.get('/api/capture/result', query_string=params)
        assert first.status_code == 200
        result = first.get_json()['result']
        assert result['data']['return_window_days'] == 30
        assert result['data']['free_return_shipping'] is True
        assert result['confidence']['overall'] > 0
        assert first.get_json()['record']['return_policy_url'] == 'https://store.example/returns'

        second = client.get('/api/capture/result', query_string=params)
        assert second.status_code == 404
        assert second.get_json()['details'] == 'Capture not received'

    def test_submit_never_needs_cookies(self, anonymous_client, capture_token):
        response = submit(anonymous_client, capture_token)

        assert response.status_code == 201
        assert 'Set-Cookie' not in response.headers

    def test_preflight_is_open(self, anonymous_client):
        response = anonymous_client.options('/api/capture/submit')

        assert response.headers['Access-Control-Allow-Origin'] == '*'
        assert 'POST' in response.headers['Access-Control-Allow-Methods']
        assert 'Access-Control-Allow-Credentials' not in response.headers

    def test_invalid_token_is_401(self, anonymous_client):
        response = submit(anonymous_client, 'a' * 64)

        assert response.status_code == 401
        assert 'regenerate' in response.get_json()['details']

    def test_regenerated_token_replaces_old(self, client, anonymous_client, capture_token):
        client.post('/api/capture-tokens')

        assert submit(anonymous_client, capture_token).status_code == 401

    def test_bad_capture_kind(self, anonymous_client, capture_token):
        assert submit(anonymous_client, capture_token, kind='recipe').status_code == 400

    def test_oversized_capture_is_truncated(self, client, anonymous_client, capture_token):
        """A page over the byte budget is cut down and still delivered, with a warning."""
        limit = wishlist_app.app.config['MAX_CAPTURE_BYTES']
        content = POLICY_PAGE + 'x' * limit

        response = submit(anonymous_client, capture_token, content=content)
        body = response.get_json()

        assert response.status_code == 201
        assert any('too large' in warning for warning in body['result']['warnings'])
        retrieved = client.get('/api/capture/result', query_string={'sessionId': body['sessionId'], 'token': capture_token})
        assert retrieved.get_json()['result']['data']['return_window_days'] == 30

    def test_multibyte_content_at_the_limit(self, anonymous_client, capture_token):
        """A capture cut to the limit in characters may exceed it in bytes; it is trimmed, not refused."""
        limit = wishlist_app.app.config['MAX_CAPTURE_BYTES']
        content = POLICY_PAGE + '\u2014' + 'x' * (limit - len(POLICY_PAGE) - 1)
        assert len(content) == limit

        response = submit(anonymous_client, capture_token, content=content)

        assert response.status_code == 201
        assert response.get_json()['result']['success'] is True

    def test_unrecognised_page_still_delivers(self, client, anonymous_client, capture_token):
        response = submit(anonymous_client, capture_token, content='<p>Hello there</p>')
        body = response.get_json()

        assert response.status_code == 201
        assert body['result']['success'] is False
        assert body['result']['confidence'] == 0

    def test_submit_rate_limit(self, anonymous_client, capture_token):
        statuses = [submit(anonymous_client, capture_token).status_code for _ in range(11)]

        assert statuses[:10] == [201] * 10
        assert statuses[10] == 429


class TestItems:
    def add(self, client, wishlist_id, **fields):
        fields['wishlistId'] = wishlist_id
        return client.post('/api/items', json=fields)

    def test_duplicate_conflict_and_force_add(self, client, wishlist_id):
        first = self.add(client, wishlist_id, product_name='Thing', original_url='https://store.example/p/123')
        assert first.status_code == 201

        conflict = self.add(client, wishlist_id, product_name='Thing', original_url='https://store.example/p/123?utm=abc')
        assert conflict.status_code == 409
        body = conflict.get_json()
        assert body['duplicateType'] == 'exact'
        assert [match['id'] for match in body['matches']] == [first.get_json()['id']]
        assert body['candidate']['original_url'] == 'https://store.example/p/123?utm=abc'

        forced = self.add(client, wishlist_id, forceAdd=True, **body['candidate'])
        assert forced.status_code == 201

        items = client.get(f'/api/wishlists/{wishlist_id}/items').get_json()['items']
        assert len(items) == 2

    def test_similar_conflict(self, client, wishlist_id):
        self.add(client, wishlist_id, product_name='Wireless Mouse', brand='Logi', price=29.5)

        similar = self.add(client, wishlist_id, product_name='Wireless Mouse', brand='Logi', price='29.99')
        assert similar.status_code == 409
        assert similar.get_json()['duplicateType'] == 'similar'

        different = self.add(client, wishlist_id, product_name='Wireless Mouse', brand='Logi', price=40)
        assert different.status_code == 201

    def test_missing_name_is_scraped(self, client, wishlist_id):
        page = """<html><head><meta property="og:title" content="Desk Lamp">
        <meta property="product:price:amount" content="19.99"></head><body></body></html>"""
        with mock.patch.object(wishlist_app.web_crawler, 'fetch_page', return_value=page) as fetch:
            response = self.add(client, wishlist_id, original_url='https://shop.example.com/lamp', notes='for the desk')

        fetch.assert_called_once_with('https://shop.example.com/lamp')
        body = response.get_json()
        assert response.status_code == 201
        assert body['product_name'] == 'Desk Lamp'
        assert body['sale_price'] == 19.99
        assert body['notes'] == 'for the desk'
        assert body['site_name'] == 'shop.example.com'

    def test_unscrapable_item_without_name(self, client, wishlist_id):
        with mock.patch.object(wishlist_app.web_crawler, 'fetch_page', return_value=None):
            response = self.add(client, wishlist_id, original_url='https://shop.example.com/lamp')

        assert response.status_code == 400

    def test_image_is_downloaded(self, client, wishlist_id):
        with mock.patch.object(wishlist_app.image_downloader, 'download', return_value='images/abc.jpg') as download:
            response = self.add(client, wishlist_id, product_name='Lamp', image_url='https://shop.example.com/lamp.jpg')

        download.assert_called_once_with('https://shop.example.com/lamp.jpg')
        assert response.get_json()['image_path'] == 'images/abc.jpg'

    def test_bad_price(self, client, wishlist_id):
        assert self.add(client, wishlist_id, product_name='Lamp', price='cheap').status_code == 400

    def test_other_users_wishlist(self, client, wishlist_id, other_user, app):
        other = app.test_client()
        with other.session_transaction() as session:
            session['user_id'] = other_user.id

        response = other.post('/api/items', json={'wishlistId': wishlist_id, 'product_name': 'Lamp'})
        assert response.status_code == 404


class TestStoresAndCommunity:
    @pytest.fixture
    def record_id(self, client):
        response = client.post('/api/community-records', json={
            'domain': 'https://www.Store.example/returns',
            'name': 'Store Example',
            'return_window_days': 30,
            'price_match_window_days': 14,
        })
        assert response.status_code == 201
        return response.get_json()['id']

    @pytest.fixture
    def store_id(self, client):
        response = client.post('/api/stores', json={'name': 'Store Example', 'domain': 'store.example', 'return_window_days': 45})
        assert response.status_code == 201
        return response.get_json()['id']

    def test_import_keeps_manual_fields(self, client, store_id, record_id):
        response = client.post(f'/api/community-records/import/{store_id}', json={'communityRecordId': record_id})
        store = response.get_json()

        assert response.status_code == 200
        assert store['return_window_days'] == 45
        assert store['price_match_window_days'] == 14
        assert store['field_sources'] == {'return_window_days': 'manual', 'price_match_window_days': 'community'}
        assert store['imported_from_id'] == record_id

    def test_import_does_not_mutate_community_record(self, client, store_id, record_id):
        client.post(f'/api/community-records/import/{store_id}', json={'communityRecordId': record_id})

        assert db.session.get(CommunityRecord, record_id).return_window_days == 30

    def test_merge_with_scrape_result(self, client, store_id):
        scraped = ScrapeResult.from_fields(
            'return_policy',
            {'return_window_days': ScrapedField(60, 0.85), 'free_returns': ScrapedField(True, 0.65)},
            source_urls=['https://store.example/returns'],
        )
        response = client.post(f'/api/stores/{store_id}/merge', json={
            'manualFields': {'receipt_required': False},
            'scrapeResult': scraped.to_dict(),
        })
        store = response.get_json()

        assert store['return_window_days'] == 45
        assert store['free_returns'] is True
        assert store['receipt_required'] is False
        assert store['return_policy_url'] == 'https://store.example/returns'
        assert store['field_sources']['free_returns'] == 'scrape'
        assert store['field_sources']['receipt_required'] == 'manual'

    @pytest.mark.parametrize("fields", [
        {'free_returns': 'yes'},
        {'return_window_days': -5},
        {'return_window_days': '30'},
        {'restocking_fee_percent': 250},
    ])
    def test_bad_policy_values_are_rejected(self, client, fields):
        response = client.post('/api/stores', json=dict(name='S', **fields))

        assert response.status_code == 400
        assert response.get_json()['error'] == 'Invalid request'

    def test_bad_manual_fields_leave_store_untouched(self, client, store_id):
        response = client.post(f'/api/stores/{store_id}/merge', json={'manualFields': {'receipt_required': 'no'}})

        assert response.status_code == 400
        assert client.get(f'/api/stores/{store_id}').get_json()['receipt_required'] is None

    def test_scrape_result_days_are_range_checked(self, client, store_id):
        scraped = ScrapeResult.from_fields('return_policy', {'price_match_window_days': ScrapedField(-3, 0.8)})

        response = client.post(f'/api/stores/{store_id}/merge', json={'scrapeResult': scraped.to_dict()})

        assert response.status_code == 400

    def test_bad_contribution_is_rejected(self, client):
        response = client.post('/api/community-records', json={'domain': 'store.example', 'name': 'Store', 'final_sale_items': 1})

        assert response.status_code == 400
        assert db.session.execute(db.select(CommunityRecord)).first() is None

    def test_duplicate_contribution(self, client, record_id):
        response = client.post('/api/community-records', json={'domain': 'store.example', 'name': 'Again'})

        assert response.status_code == 409

    def test_search(self, client, record_id):
        client.post('/api/community-records', json={'domain': 'other.example', 'name': 'Other Shop'})

        found = client.get('/api/community-records', query_string={'search': 'store'}).get_json()
        assert found['total'] == 1
        assert found['records'][0]['id'] == record_id

        everything = client.get('/api/community-records', query_string={'limit': 500}).get_json()
        assert everything['total'] == 2

        assert client.get('/api/community-records/domain/store.example').get_json()['id'] == record_id

    def test_verify_and_report(self, client, record_id):
        verified = client.post(f'/api/community-records/{record_id}/verify', json={'isAccurate': True}).get_json()
        assert verified['verified_count'] == 1
        # a second vote from the same user replaces the first
        again = client.post(f'/api/community-records/{record_id}/verify', json={'isAccurate': True}).get_json()
        assert again['verified_count'] == 1

        assert client.post(f'/api/community-records/{record_id}/report', json={'reason': 'boring'}).status_code == 400
        reported = client.post(f'/api/community-records/{record_id}/report', json={'reason': 'outdated'}).get_json()
        assert reported['report_count'] == 1

    def test_scrape_policy(self, client):
        result = ScrapeResult.from_fields(
            'return_policy',
            {'return_window_days': ScrapedField(30, 0.75)},
            source_urls=['https://store.example/returns'],
        )
        with mock.patch.object(wishlist_app.web_crawler, 'scrape_policies', return_value=result) as scrape:
            response = client.post('/api/stores/scrape-policy', json={'domain': 'https://www.store.example/'})

        scrape.assert_called_once_with('store.example')
        body = response.get_json()
        assert body['success'] is True
        assert body['record'] == {'return_window_days': 30, 'return_policy_url': 'https://store.example/returns'}

    def test_scrape_policy_rejects_bad_domain(self, client):
        assert client.post('/api/stores/scrape-policy', json={'domain': 'not a domain'}).status_code == 400

    def test_policy_paths(self, client):
        body = client.get('/api/stores/policy-paths').get_json()

        assert '/returns' in body['returnPolicy']
        assert '/price-match' in body['priceMatch']
