import logging
import pathlib
import sys

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import hugepages_setup
from hugepages_setup import EditOutcome

MY_CNF = "[client]\nport=3306\n\n[mysqld]\ninnodb_buffer_pool_size=8G\n"


def test_mysql_directive_inserted_after_section_marker():
    text, outcome = hugepages_setup.ensure_mysql_large_pages(MY_CNF)

    assert outcome is EditOutcome.APPLIED
    assert text.splitlines() == [
        "[client]",
        "port=3306",
        "",
        "[mysqld]",
        "# Enable Huge Pages for MariaDB (Added by hugepages-setup)",
        "large-pages=1",
        "# End of Huge Pages directive (Added by hugepages-setup)",
        "innodb_buffer_pool_size=8G",
    ]


def test_mysql_directive_is_idempotent():
    first, _ = hugepages_setup.ensure_mysql_large_pages(MY_CNF)
    second, outcome = hugepages_setup.ensure_mysql_large_pages(first)

    assert outcome is EditOutcome.ALREADY_PRESENT
    assert second == first


def test_mysql_directive_presence_suppresses_edit(caplog):
    caplog.set_level(logging.WARNING)
    original = "[mysqld]\nlarge-pages=0\n"
    text, outcome = hugepages_setup.ensure_mysql_large_pages(original)

    assert outcome is EditOutcome.ALREADY_PRESENT
    assert text == original
    assert any("does not enable large pages" in record.message for record in caplog.records)


def test_mysql_underscore_spelling_counts_as_present():
    original = "[mysqld]\nlarge_pages=ON\n"
    text, outcome = hugepages_setup.ensure_mysql_large_pages(original)
    assert outcome is EditOutcome.ALREADY_PRESENT
    assert text == original


def test_mysql_missing_section_marker_is_reported():
    original = "[client]\nport=3306\n"
    text, outcome = hugepages_setup.ensure_mysql_large_pages(original)

    assert outcome is EditOutcome.SKIPPED_NO_SECTION_MARKER
    assert text == original


def test_mysql_section_marker_without_trailing_newline():
    text, outcome = hugepages_setup.ensure_mysql_large_pages("[mysqld]")
    assert outcome is EditOutcome.APPLIED
    assert text.splitlines()[1:3] == [
        "# Enable Huge Pages for MariaDB (Added by hugepages-setup)",
        "large-pages=1",
    ]


def test_opcache_directive_already_enabled_is_noop():
    original = "[opcache]\nopcache.enable=1\n  opcache.huge_code_pages = 1 \n"
    text, outcome = hugepages_setup.ensure_opcache_huge_code_pages(original, is_main_php_ini=True)

    assert outcome is EditOutcome.ALREADY_PRESENT
    assert text == original


def test_opcache_directive_with_other_value_is_rewritten_in_place():
    original = "opcache.enable=1\nopcache.huge_code_pages=0\nopcache.memory_consumption=256\n"
    text, outcome = hugepages_setup.ensure_opcache_huge_code_pages(original, is_main_php_ini=False)

    assert outcome is EditOutcome.UPDATED
    before = original.splitlines()
    after = text.splitlines()
    assert len(before) == len(after)
    changed = [index for index, (old, new) in enumerate(zip(before, after)) if old != new]
    assert changed == [1]
    assert after[1] == "opcache.huge_code_pages=1"


def test_opcache_commented_directive_is_uncommented():
    original = "[opcache]\n;opcache.huge_code_pages=1\n"
    text, outcome = hugepages_setup.ensure_opcache_huge_code_pages(original, is_main_php_ini=True)

    assert outcome is EditOutcome.UPDATED
    assert text == "[opcache]\nopcache.huge_code_pages=1\n"


def test_opcache_active_line_preferred_over_comment():
    original = "; opcache.huge_code_pages enables huge pages\nopcache.huge_code_pages=0\n"
    text, outcome = hugepages_setup.ensure_opcache_huge_code_pages(original, is_main_php_ini=False)

    assert outcome is EditOutcome.UPDATED
    assert text == "; opcache.huge_code_pages enables huge pages\nopcache.huge_code_pages=1\n"


def test_opcache_inserted_after_section_in_main_php_ini():
    original = "[PHP]\nengine=On\n\n[opcache]\nopcache.enable=1\n"
    text, outcome = hugepages_setup.ensure_opcache_huge_code_pages(original, is_main_php_ini=True)

    assert outcome is EditOutcome.APPLIED
    assert text == "[PHP]\nengine=On\n\n[opcache]\nopcache.huge_code_pages=1\nopcache.enable=1\n"


def test_opcache_section_created_when_missing_from_main_php_ini():
    original = "[PHP]\nengine=On"
    text, outcome = hugepages_setup.ensure_opcache_huge_code_pages(original, is_main_php_ini=True)

    assert outcome is EditOutcome.APPLIED
    assert text == "[PHP]\nengine=On\n\n; Added by hugepages-setup\n[opcache]\nopcache.huge_code_pages=1\n"


def test_opcache_fragment_gets_plain_append():
    original = "zend_extension=opcache.so\nopcache.enable=1\n"
    text, outcome = hugepages_setup.ensure_opcache_huge_code_pages(original, is_main_php_ini=False)

    assert outcome is EditOutcome.APPLIED
    assert text == original + "\n; Added by hugepages-setup\nopcache.huge_code_pages=1\n"
    assert "[opcache]" not in text


def test_opcache_edit_is_idempotent():
    original = "[PHP]\nengine=On\n"
    first, _ = hugepages_setup.ensure_opcache_huge_code_pages(original, is_main_php_ini=True)
    second, outcome = hugepages_setup.ensure_opcache_huge_code_pages(first, is_main_php_ini=True)

    assert outcome is EditOutcome.ALREADY_PRESENT
    assert second == first


def test_rendered_sysctl_conf():
    assert hugepages_setup.render_sysctl_conf(4513) == (
        "# --- Huge Pages Configuration (Generated by hugepages-setup) ---\n"
        "vm.nr_hugepages = 4513\n"
    )


def test_rendered_thp_script_guards_each_control_file():
    controls = (
        pathlib.Path("/sys/kernel/mm/transparent_hugepage/enabled"),
        pathlib.Path("/sys/kernel/mm/transparent_hugepage/defrag"),
    )
    script = hugepages_setup.render_thp_script(controls)

    assert script.startswith("#!/bin/bash\n")
    for control in controls:
        assert f"if [ -f {control} ]; then" in script
        assert f"  echo never > {control}" in script


def test_rendered_thp_service():
    unit = hugepages_setup.render_thp_service(pathlib.Path("/usr/local/sbin/disable-thp.sh"), "mariadb.service")

    assert "Before=mariadb.service" in unit
    assert "After=sysinit.target local-fs.target" in unit
    assert "Type=oneshot" in unit
    assert "RemainAfterExit=true" in unit
    assert "ExecStart=/usr/local/sbin/disable-thp.sh" in unit
    assert "WantedBy=multi-user.target" in unit
