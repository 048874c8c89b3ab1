"""
HTML parser tests.
"""

from websecscan.scanner.core.parser import HTMLParser, extract_script_urls

PAGE_URL = 'http://example.test/page'

PAGE = """<html>
<head><meta name="csrf-token" content="Zq4xV9mK2pLr7TbW"></head>
<body>
  <a href="/search?q=1">Search</a>
  <a href="javascript:void(0)">Nothing</a>
  <a href="mailto:admin@example.test">Mail</a>
  <iframe src="/frame"></iframe>
  <form action="/post" method="post">
    <input type="hidden" name="_token" value="tok">
    <input name="title">
    <textarea name="body">hi</textarea>
    <select name="kind"><option value="a">A</option><option value="b" selected>B</option></select>
    <input type="submit" value="Go">
  </form>
  <script src="/static/app.js"></script>
  <script>fetch('/api/items'); window.location = '/next';</script>
</body>
</html>"""


class TestHTMLParser:

    def setup_method(self):
        self.page = HTMLParser('http://example.test/').parse(PAGE, PAGE_URL)

    def test_links(self):
        urls = [link.url for link in self.page.links]
        assert urls == [
            'http://example.test/search?q=1',
            'http://example.test/frame',
            'http://example.test/next',
        ]
        assert self.page.links[0].parameters == {'q': '1'}
        assert self.page.links[-1].from_script

    def test_form_fields_and_token(self):
        form = self.page.forms[0]

        assert form.action == 'http://example.test/post'
        assert form.method == 'POST'
        assert [f.name for f in form.fields] == ['_token', 'title', 'body', 'kind']
        assert form.has_csrf_token
        assert form.csrf_token_value == 'tok'
        assert form.has_csrf_meta
        assert [f.name for f in form.injectable_fields] == ['title', 'body', 'kind']
        assert form.baseline_values() == {'_token': 'tok', 'title': 'test', 'body': 'hi', 'kind': 'b'}

    def test_scripts(self):
        assert self.page.scripts == ['http://example.test/static/app.js']
        assert self.page.script_endpoints == ['http://example.test/api/items']

    def test_form_defaults(self):
        page = HTMLParser('http://example.test/').parse('<form><input name="q"></form>', PAGE_URL)
        form = page.forms[0]

        assert form.action == PAGE_URL
        assert form.method == 'GET'
        assert not form.has_csrf_token
        assert not form.has_csrf_meta


class TestExtractScriptUrls:

    def test_client_libraries(self):
        script = """
            axios.post('/api/login', data);
            $.ajax({ type: 'GET', url: '/legacy/report' });
        """
        assert extract_script_urls(script, PAGE_URL) == [
            'http://example.test/api/login',
            'http://example.test/legacy/report',
        ]

    def test_template_literals_ignored(self):
        assert extract_script_urls('fetch(`/api/users/${id}`)', PAGE_URL) == []
