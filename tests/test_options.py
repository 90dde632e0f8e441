import unittest


class TestOptions(unittest.TestCase):
    def test_job_request_from_camel_case_payload(self):
        from pipeline.options import JobRequest, parse_options

        request = parse_options(JobRequest, {
            "type": "project",
            "projectId": "p1",
            "aiConfigId": "openai",
            "promptTemplateId": "default",
            "options": {"sourceLanguage": "en", "retranslateTM": True, "aiModel": "gpt-4o", "autoReview": True},
        })

        self.assertEqual(request.project_id, "p1")
        self.assertIsNone(request.file_id)
        self.assertTrue(request.options.retranslate_tm)
        self.assertTrue(request.options.auto_review)
        self.assertEqual(request.options.ai_model, "gpt-4o")

    def test_file_job_needs_file_id(self):
        from pipeline.errors import ValidationError
        from pipeline.options import JobRequest, parse_options

        with self.assertRaises(ValidationError) as ctx:
            parse_options(JobRequest, {"type": "file", "projectId": "p1", "aiConfigId": "a", "promptTemplateId": "t"})
        self.assertTrue(ctx.exception.details["errors"])

    def test_unknown_and_out_of_range_options(self):
        from pipeline.errors import ValidationError
        from pipeline.options import ResolveOptions, ReviewOptions, parse_options

        with self.assertRaises(ValidationError):
            parse_options(ResolveOptions, {"sourceLang": "en"})
        with self.assertRaises(ValidationError):
            parse_options(ReviewOptions, {"contextWindow": 50})

    def test_defaults(self):
        from pipeline.options import ResolveOptions, ReviewOptions, parse_options

        self.assertEqual(parse_options(ResolveOptions, None).ai_model, "gpt-3.5-turbo")
        self.assertEqual(ReviewOptions().context_window, 0)


if __name__ == "__main__":
    unittest.main()
