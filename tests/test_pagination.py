import unittest

from imagehost.pagination import PAGE_SIZE, build_page, paginate, parse_page_index


class PaginateTests(unittest.TestCase):
    def setUp(self):
        self.files = [f"img{i:02d}.png" for i in range(25)]

    def test_windows_over_twenty_five_files(self):
        self.assertEqual(paginate(self.files, 20, 1), self.files[:20])
        self.assertEqual(paginate(self.files, 20, 2), self.files[20:])
        self.assertEqual(paginate(self.files, 20, 3), [])

    def test_third_page_is_empty_without_next(self):
        page = build_page(self.files, 20, 3)
        self.assertEqual(page.files, [])
        self.assertIsNone(page.next)
        self.assertEqual(page.prev, 2)

    def test_prev_and_next_links(self):
        first = build_page(self.files, 20, 1)
        self.assertIsNone(first.prev)
        self.assertEqual(first.next, 2)
        self.assertEqual(first.index, 1)
        self.assertEqual(first.size, 20)

        second = build_page(self.files, 20, 2)
        self.assertEqual(second.prev, 1)
        self.assertIsNone(second.next)

    def test_prev_absent_when_previous_window_is_empty(self):
        page = build_page(self.files, 20, 5)
        self.assertEqual(page.files, [])
        self.assertIsNone(page.prev)
        self.assertIsNone(page.next)

    def test_exact_multiple_has_no_next(self):
        files = self.files[:20]
        page = build_page(files, 20, 1)
        self.assertEqual(len(page.files), 20)
        self.assertIsNone(page.next)

    def test_empty_sequence(self):
        page = build_page([], PAGE_SIZE, 1)
        self.assertEqual(page.files, [])
        self.assertIsNone(page.prev)
        self.assertIsNone(page.next)

    def test_zero_index_is_not_validated(self):
        self.assertEqual(paginate(self.files, 20, 0), [])
        page = build_page(self.files, 20, 0)
        self.assertIsNone(page.prev)
        self.assertEqual(page.next, 1)

    def test_negative_index_slices_from_the_end(self):
        self.assertEqual(paginate(self.files, 20, -1), self.files[:5])


class ParsePageIndexTests(unittest.TestCase):
    def test_missing_or_non_numeric_defaults_to_first_page(self):
        for raw in (None, "", "abc", "  ", "page2"):
            with self.subTest(raw=raw):
                self.assertEqual(parse_page_index(raw), 1)

    def test_numeric_values(self):
        self.assertEqual(parse_page_index("3"), 3)
        self.assertEqual(parse_page_index(" 4"), 4)
        self.assertEqual(parse_page_index("2abc"), 2)
        self.assertEqual(parse_page_index("0"), 0)
        self.assertEqual(parse_page_index("-1"), -1)


if __name__ == "__main__":
    unittest.main()
