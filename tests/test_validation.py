import pytest

from mentioned.exceptions import InputValidationError
from mentioned.models.schemas import ScanRequest
from mentioned.services.profiler import brand_id_for, split_list
from mentioned.services.validation import scan_input_issues, validate_scan_input

def fields(req):
    return {i["field"] for i in scan_input_issues(req)}

class TestScanInput:
    def test_valid_request(self, scan_request):
        assert validate_scan_input(scan_request) is scan_request

    def test_missing_required_fields(self):
        req = ScanRequest(brand_name=" ", website_url="", core_problem="short", target_buyer="devs")
        with pytest.raises(InputValidationError) as exc:
            validate_scan_input(req)
        assert {i["field"] for i in exc.value.issues} == {
            "brand_name", "website_url", "core_problem", "target_buyer"}

    @pytest.mark.parametrize("url", ["ftp://cal.com", "https://", "https://www.linkedin.com/company/x"])
    def test_bad_urls(self, scan_request, url):
        assert fields(scan_request.model_copy(update={"website_url": url})) == {"website_url"}

    def test_too_many_competitors(self, scan_request):
        req = scan_request.model_copy(update={"competitors": [f"Tool {i}" for i in range(6)]})
        assert fields(req) == {"competitors"}

    def test_questions_must_not_name_the_brand(self, scan_request):
        req = scan_request.model_copy(update={"buyer_questions": ["Is Cal.com worth it for startups?"]})
        assert fields(req) == {"buyer_questions"}

    def test_short_differentiators(self, scan_request):
        assert fields(scan_request.model_copy(update={"differentiators": "cheap"})) == {"differentiators"}

class TestProfileHelpers:
    def test_brand_id_prefers_explicit_then_domain(self, scan_request):
        assert brand_id_for(scan_request) == "cal.com"
        assert brand_id_for(scan_request.model_copy(update={"brand_id": "b-42"})) == "b-42"

    def test_brand_id_from_name_when_url_has_no_domain(self, scan_request):
        req = scan_request.model_copy(update={"website_url": "http://localhost", "brand_name": "Acme Co"})
        assert brand_id_for(req) == "acme-co"

    def test_split_list(self):
        assert split_list("open source; self hosting,\nAPI") == ["open source", "self hosting", "API"]
        assert split_list(None) == []
