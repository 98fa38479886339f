import storage


def test_categories_sorted_with_insertion_tiebreak(user):
    storage.replace_system_categories(user["id"], [{"name": "AI first", "color": "#111111"}])
    user_cat = storage.create_category(user["id"], "Mine", "#222222")
    with storage.get_db() as conn:
        conn.execute("UPDATE categories SET sort_order = 0 WHERE id = ?", (user_cat["id"],))
        conn.commit()
    assert [c["name"] for c in storage.list_categories(user["id"])] == ["AI first", "Mine"]


def test_regeneration_keeps_user_categories(user):
    mine = storage.create_category(user["id"], "Mine", "#222222")
    old = storage.replace_system_categories(user["id"], [{"name": "Old", "color": "#111111"}])
    storage.add_rule(old[0]["id"], "keyword", "x")

    storage.replace_system_categories(user["id"], [{"name": "New", "color": "#333333"}])

    names = [c["name"] for c in storage.list_categories(user["id"])]
    assert "Old" not in names
    assert {"Mine", "New"} <= set(names)
    assert storage.get_category(user["id"], mine["id"]) is not None
    assert storage.list_category_rules(old[0]["id"]) == []


def test_rules_keep_insertion_order_across_categories(user):
    a = storage.create_category(user["id"], "A", "#111111")
    b = storage.create_category(user["id"], "B", "#222222")
    storage.add_rule(b["id"], "exact", "first")
    storage.add_rule(a["id"], "keyword", "second")
    storage.add_rule(b["id"], "prefix", "third")
    assert [r["rule_value"] for r in storage.list_rules(user["id"])] == ["first", "second", "third"]


def test_title_cache_most_recent_wins(user):
    storage.write_title_cache(user["id"], "weekly sync", "cat_a")
    storage.write_title_cache(user["id"], "weekly sync", "cat_b")
    assert storage.load_title_cache(user["id"]) == {"weekly sync": "cat_b"}


def test_update_category_applies_only_given_fields(user):
    cat = storage.create_category(user["id"], "Focus", "#111111")
    assert storage.update_category(user["id"], cat["id"], storage.CategoryPatch(name="Deep work"))
    assert storage.get_category(user["id"], cat["id"])["color"] == "#111111"
    assert not storage.update_category(user["id"], "cat_missing", storage.CategoryPatch(name="x"))


def test_report_settings_patch(user):
    storage.save_report_settings(user["id"], storage.ReportSettingsPatch(send_hour=8))
    storage.save_report_settings(user["id"], storage.ReportSettingsPatch(timezone="UTC"))
    assert storage.get_report_settings(user["id"]) == {
        "is_enabled": 1,
        "send_day": 0,
        "send_hour": 8,
        "timezone": "UTC",
    }
