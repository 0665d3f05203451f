"""Unit tests for pages.py."""
import unittest

from granary import as2

import common
from flask_app import app

from .testutil import TestCase, TEST_PUBLIC_PEM

AS2_HEADERS = {'Accept': as2.CONTENT_TYPE}


class PagesTest(TestCase):

    def get(self, path, base_url='https://self', **kwargs):
        return self.client.get(path, base_url=base_url, **kwargs)

    def test_home_html(self):
        self.make_post(title='First <b>post</b>')
        self.make_post(path='/draft', status='draft', title='Secret')

        resp = self.get('/')
        self.assertEqual(200, resp.status_code)
        self.assertEqual(common.CONTENT_TYPE_HTML, resp.headers['Content-Type'])
        self.assertEqual('Accept', resp.headers['Vary'])

        body = resp.get_data(as_text=True)
        self.assertIn('My Blog', body)
        self.assertIn('Things I write', body)
        self.assertIn('href="https://self/p"', body)
        self.assertIn('First post', body)
        self.assertNotIn('Secret', body)

    def test_home_as2(self):
        resp = self.get('/', headers=AS2_HEADERS)
        self.assertEqual(200, resp.status_code)
        self.assertEqual(as2.CONTENT_TYPE, resp.headers['Content-Type'])
        self.assertEqual('Accept', resp.headers['Vary'])

        person = resp.json
        self.assertEqual('Person', person['type'])
        self.assertEqual('https://self/', person['id'])
        self.assertEqual('main', person['preferredUsername'])
        self.assertEqual(TEST_PUBLIC_PEM, person['publicKey']['publicKeyPem'])

    def test_home_as2_ld(self):
        resp = self.get('/', headers={'Accept': as2.CONTENT_TYPE_LD})
        self.assertEqual(as2.CONTENT_TYPE_LD_PROFILE, resp.headers['Content-Type'])

    def test_sub_path_home(self):
        self.make_post()

        resp = self.get('/de', headers=AS2_HEADERS)
        self.assertEqual(200, resp.status_code)
        self.assertEqual('https://self/de', resp.json['id'])

        resp = self.get('/de')
        self.assertEqual(200, resp.status_code)
        self.assertIn('Mein Blog', resp.get_data(as_text=True))
        self.assertNotIn('https://self/p', resp.get_data(as_text=True))

    def test_sub_path_home_trailing_slash_redirects(self):
        resp = self.get('/de/')
        self.assertEqual(301, resp.status_code)
        self.assertEqual('/de', resp.headers['Location'])

    def test_post_html(self):
        self.make_post(content='<p>hello <b>world</b></p>', title='Hi',
                       replylink='https://other/post')

        resp = self.get('/p')
        self.assertEqual(200, resp.status_code)
        self.assertEqual(common.CONTENT_TYPE_HTML, resp.headers['Content-Type'])

        body = resp.get_data(as_text=True)
        self.assertIn('<div class="e-content"><p>hello <b>world</b></p></div>', body)
        self.assertIn('<h1 class="p-name">Hi</h1>', body)
        self.assertIn('class="u-in-reply-to" href="https://other/post"', body)
        self.assertIn('datetime="2022-01-02T03:04:05+00:00"', body)

    def test_post_as2(self):
        self.make_post()

        resp = self.get('/p', headers=AS2_HEADERS)
        self.assertEqual(200, resp.status_code)
        self.assertEqual(as2.CONTENT_TYPE, resp.headers['Content-Type'])
        self.assertEqual('Accept', resp.headers['Vary'])
        self.assertEqual('Note', resp.json['type'])
        self.assertEqual('https://self/p', resp.json['id'])
        self.assertEqual('https://self/', resp.json['attributedTo'])

    def test_post_trailing_slash_redirects(self):
        self.make_post()
        resp = self.get('/p/')
        self.assertEqual(301, resp.status_code)
        self.assertEqual('/p', resp.headers['Location'])

    def test_post_not_found(self):
        self.assertEqual(404, self.get('/nope').status_code)
        self.assertEqual(404, self.get('/nope/').status_code)

    def test_draft_and_private_need_login(self):
        self.make_post(path='/draft', status='draft')
        self.make_post(path='/private', visibility='private')
        self.make_post(path='/unlisted', visibility='unlisted')

        self.assertEqual(404, self.get('/draft').status_code)
        self.assertEqual(404, self.get('/private').status_code)
        self.assertEqual(404, self.get('/private', headers=AS2_HEADERS).status_code)
        self.assertEqual(200, self.get('/unlisted').status_code)

        # login cookie is for the default test host
        self.login()
        self.assertEqual(200, self.client.get('/draft').status_code)
        self.assertEqual(200, self.client.get('/private').status_code)

    def test_public_pages_dont_vary_on_cookie(self):
        self.make_post()
        self.login()

        for path in '/', '/p':
            resp = self.client.get(path)
            self.assertEqual(200, resp.status_code, path)
            self.assertEqual('Accept', resp.headers['Vary'], path)

        resp = self.client.get('/p', headers=AS2_HEADERS)
        self.assertEqual('Accept', resp.headers['Vary'])

    def test_draft_with_login_varies_on_cookie(self):
        self.make_post(path='/draft', status='draft')
        self.login()

        resp = self.client.get('/draft')
        self.assertEqual(200, resp.status_code)
        self.assertIn('Cookie', resp.headers['Vary'])

    def test_teardown_after_request(self):
        class RequestTest(TestCase):
            def test_get(self):
                self.make_post()
                self.assertEqual(200, self.client.get('/p').status_code)

        result = unittest.TestResult()
        RequestTest('test_get').run(result)
        self.assertEqual([], result.errors)
        self.assertEqual([], result.failures)
        self.assertEqual(1, result.testsRun)

    #
    # alt domains
    #
    def test_moved_domain(self):
        app.config.update(PUBLIC_ADDRESS='https://new', ALT_ADDRESSES=['https://old'])

        resp = self.get('/', base_url='https://old', headers=AS2_HEADERS)
        self.assertEqual(200, resp.status_code)
        person = resp.json
        self.assertEqual('https://old/', person['id'])
        self.assertEqual('https://new/', person['movedTo'])
        self.assertIn('https://new/', person['alsoKnownAs'])
        self.assertEqual('https://old/activitypub/inbox/main', person['inbox'])

        resp = self.get('/', base_url='https://old')
        self.assertEqual(301, resp.status_code)
        self.assertEqual('https://new/', resp.headers['Location'])

        # main address isn't moved
        resp = self.get('/', base_url='https://new', headers=AS2_HEADERS)
        self.assertEqual('https://new/', resp.json['id'])
        self.assertNotIn('movedTo', resp.json)
        self.assertEqual(['https://old/'], resp.json['alsoKnownAs'])

    def test_alt_domain_redirect_keeps_path_and_query(self):
        app.config['ALT_ADDRESSES'] = ['https://old']
        resp = self.get('/p?x=y', base_url='https://old')
        self.assertEqual(301, resp.status_code)
        self.assertEqual('https://self/p?x=y', resp.headers['Location'])

    def test_alt_domain_serves_post_as2(self):
        app.config['ALT_ADDRESSES'] = ['https://old']
        self.make_post()
        resp = self.get('/p', base_url='https://old', headers=AS2_HEADERS)
        self.assertEqual(200, resp.status_code)
        self.assertEqual('https://self/p', resp.json['id'])

    def test_alt_domain_serves_discovery(self):
        app.config['ALT_ADDRESSES'] = ['https://old']
        resp = self.get('/.well-known/webfinger?resource=acct:main@old',
                        base_url='https://old')
        self.assertEqual(200, resp.status_code)

        resp = self.get('/nodeinfo', base_url='https://old')
        self.assertEqual(200, resp.status_code)
