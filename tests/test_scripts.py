from sharelink.workflows.scripts import filter_scripts, locate_scripts


def test_locate_scripts_keeps_document_order():
    body = """
    <html><head><script>var a = 1;</script></head>
    <body><p>x</p><script type="text/javascript">var b = 2;</script>
    <script>var c = 3;</script></body></html>
    """
    assert locate_scripts(body) == ("var a = 1;", "var b = 2;", "var c = 3;")


def test_locate_scripts_skips_external_and_data_blocks():
    body = """
    <script src="https://cdn.example/lib.js">var ignored = 1;</script>
    <script type="application/ld+json">{"dlbutton": true}</script>
    <script type="text/template"><a id="dlbutton"></a></script>
    <script>   </script>
    <script type="text/javascript; charset=utf-8">var kept = 'dlbutton';</script>
    """
    assert locate_scripts(body) == ("var kept = 'dlbutton';",)


def test_locate_scripts_empty_body():
    assert locate_scripts("") == ()
    assert locate_scripts("<p>no scripts</p>") == ()


def test_filter_scripts_by_marker():
    scripts = ("var a = 1;", "document.getElementById('dlbutton').href = '/x';", "dlbutton;")
    assert filter_scripts(scripts, "dlbutton") == scripts[1:]
    assert filter_scripts(scripts, "fimage") == ()
    assert filter_scripts(scripts, "") == scripts
