"""
UI component tests that don't require the Flask app to be running.
Pages are rendered with the test client and loaded into the browser with
set_content, or served from a routed fake origin when a test needs to
watch the requests the table script sends.
"""
import json

import pytest
from playwright.sync_api import Page, expect

import database


@pytest.fixture
def inventory_html(staff_client):
    for i in range(1, 4):
        database.create_inventory_item(f"Tuoli {i}", "Kerhohuone")
    return staff_client.get('/inventory').get_data(as_text=True)


@pytest.mark.e2e
def test_select_all_updates_toolbar(page: Page, inventory_html):
    """Select-all checks every row and fills the hidden id fields."""
    page.set_content(inventory_html)

    toolbar = page.locator("#inventory-table .table-toolbar")
    expect(toolbar).to_be_hidden()

    page.check("#inventory-table [data-select-all]")
    expect(toolbar).to_be_visible()
    expect(page.locator("#inventory-table [data-count]")).to_contain_text("3")

    ids = json.loads(page.locator("[data-delete-form] [data-selected-ids]").input_value())
    assert len(ids) == 3


@pytest.mark.e2e
def test_unchecking_one_row_makes_select_all_indeterminate(page: Page, inventory_html):
    page.set_content(inventory_html)
    page.check("#inventory-table [data-select-all]")
    page.locator("#inventory-table [data-row-select]").first.uncheck()

    select_all = page.locator("#inventory-table [data-select-all]")
    assert select_all.evaluate("el => el.indeterminate") is True
    expect(page.locator("#inventory-table [data-count]")).to_contain_text("2")


@pytest.mark.e2e
def test_escape_cancels_inline_edit(page: Page, inventory_html):
    """Escape restores the committed value without saving."""
    page.set_content(inventory_html)
    cell = page.locator('#inventory-table td[data-field="name"]').first
    cell.click()

    editor = cell.locator("input")
    expect(editor).to_have_value("Tuoli 1")
    editor.fill("Nojatuoli")
    editor.press("Escape")

    expect(cell).to_have_text("Tuoli 1")
    expect(cell).not_to_have_class("save-failed")


@pytest.mark.e2e
def test_info_reel_countdown_bar(page: Page, client):
    """The reel page carries a countdown bar sized to the dwell time."""
    page.set_content(client.get('/minutes?view=infoReel').get_data(as_text=True))
    bar = page.locator(".reel-progress-bar")
    expect(bar).to_have_count(1)
    assert "30000ms" in bar.get_attribute("style")


@pytest.fixture
def served_inventory(page: Page, inventory_html):
    """Serve the rendered page from a fake origin so the editor's fetch can be observed."""
    posts = []

    def handle(route):
        req = route.request
        if req.method == "POST":
            posts.append(req.post_data or "")
            route.fulfill(status=200, content_type="application/json",
                          body='{"success": true, "applied": true}')
        elif req.url.split("?")[0].endswith("/inventory"):
            route.fulfill(status=200, content_type="text/html", body=inventory_html)
        else:
            route.fulfill(status=404, body="")

    page.route("http://portal.test/**", handle)
    page.goto("http://portal.test/inventory")
    return posts


@pytest.mark.e2e
def test_enter_without_change_sends_nothing(page: Page, served_inventory):
    cell = page.locator('#inventory-table td[data-field="name"]').first
    cell.click()
    cell.locator("input").press("Enter")

    expect(cell).to_have_text("Tuoli 1")
    page.wait_for_timeout(300)
    assert served_inventory == []


@pytest.mark.e2e
def test_blur_commits_changed_value(page: Page, served_inventory):
    cell = page.locator('#inventory-table td[data-field="name"]').first
    cell.click()
    editor = cell.locator("input")
    editor.fill("Nojatuoli")

    with page.expect_request(lambda req: req.method == "POST") as request_info:
        editor.blur()

    body = request_info.value.post_data
    assert "updateField" in body
    assert "Nojatuoli" in body
    expect(cell).to_have_text("Nojatuoli")
    assert cell.get_attribute("data-value") == "Nojatuoli"
