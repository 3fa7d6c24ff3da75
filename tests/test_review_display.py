import pytest

from conftest import make_review
from core.errors import InvalidSortFieldError
from core.review_display import (ReviewQuery, convert_to_public_review, get_review_stats,
                                 get_reviews, load_reviews)
from core.storage import write_json


def test_min_rating_filter_sorted_by_rating():
    reviews = [make_review("a", rating=3), make_review("b", rating=5),
               make_review("c", rating=4), make_review("d", rating=2)]

    result = get_reviews(reviews, min_rating=3, sort_by="rating")

    assert [r["content"]["rating"] for r in result["reviews"]] == [5, 4, 3]
    assert result["pagination"]["total"] == 3


def test_pagination():
    reviews = [make_review(f"r{i}", days=i) for i in range(15)]

    first = get_reviews(reviews, limit=10)
    second = get_reviews(reviews, limit=10, offset=10)

    assert len(first["reviews"]) == 10
    assert first["reviews"][0]["id"] == "r14"
    assert first["pagination"] == {
        "total": 15, "limit": 10, "offset": 0, "hasMore": True, "totalPages": 2, "currentPage": 1,
    }
    assert len(second["reviews"]) == 5
    assert second["pagination"]["hasMore"] is False
    assert second["pagination"]["currentPage"] == 2


def test_non_positive_limit_and_negative_offset_fall_back_to_defaults():
    result = get_reviews([make_review("a")], limit=0, offset=-5)

    assert result["pagination"]["limit"] == 12
    assert result["pagination"]["offset"] == 0
    assert result["pagination"]["totalPages"] == 1
    assert result["pagination"]["currentPage"] == 1
    assert [r["id"] for r in result["reviews"]] == ["a"]


def test_public_review_hides_private_fields():
    public = convert_to_public_review(make_review("a"))

    assert "email" not in public["reviewer"]
    assert "ipAddress" not in public["metadata"]
    assert "userAgent" not in public["metadata"]
    assert set(public["admin"]) == {"featured", "moderatedAt"}
    assert public["reviewer"]["verified"] is True


def test_filters_by_relationship_featured_and_search():
    reviews = [
        make_review("a", relationship="client", featured=True),
        make_review("b", relationship="colleague", name="Sam Smith"),
        make_review("c", relationship="client", testimonial="Delivered the Kubernetes rollout on time and calmly."),
    ]

    assert [r["id"] for r in get_reviews(reviews, relationship="client", sort_by="name")["reviews"]] == ["a", "c"]
    assert [r["id"] for r in get_reviews(reviews, featured=True)["reviews"]] == ["a"]
    assert [r["id"] for r in get_reviews(reviews, search="kubernetes")["reviews"]] == ["c"]
    assert [r["id"] for r in get_reviews(reviews, search="smith")["reviews"]] == ["b"]
    assert [r["id"] for r in get_reviews(reviews)["featured"]] == ["a"]


def test_sort_by_name_ascending_is_stable():
    reviews = [make_review("x", name="Bea"), make_review("y", name="alan"), make_review("z", name="Bea")]

    result = get_reviews(reviews, sort_by="name", sort_order="asc")

    assert [r["id"] for r in result["reviews"]] == ["y", "x", "z"]


def test_invalid_sort_field():
    with pytest.raises(InvalidSortFieldError):
        ReviewQuery(sort_by="email")


def test_query_from_args_clamps_values():
    query = ReviewQuery.from_args({"limit": "500", "offset": "-4", "sortOrder": "sideways",
                                   "featured": "true", "minRating": "x"})

    assert query.limit == 50
    assert query.offset == 0
    assert query.sort_order == "desc"
    assert query.featured is True
    assert query.min_rating is None


def test_load_reviews_skips_non_reviews(tmp_path):
    write_json(tmp_path / "a.json", make_review("a").to_dict())
    write_json(tmp_path / "index.json", {"reviews": []})
    write_json(tmp_path / "featured.json", {"featuredIds": ["a"]})
    pending = make_review("p").to_dict()
    pending["status"] = "pending"
    write_json(tmp_path / "p.json", pending)
    write_json(tmp_path / "bad.json", {"id": "bad", "status": "approved"})
    (tmp_path / "broken.json").write_text("{")

    assert [r.id for r in load_reviews(tmp_path)] == ["a"]


def test_review_stats():
    reviews = [make_review("a", rating=5, featured=True), make_review("b", rating=4, relationship="client")]

    stats = get_review_stats(reviews)

    assert stats["total"] == 2
    assert stats["averageRating"] == 4.5
    assert stats["ratingDistribution"] == {"1": 0, "2": 0, "3": 0, "4": 1, "5": 1}
    assert stats["relationships"] == {"colleague": 1, "client": 1}
    assert stats["featured"] == 1


def test_empty_listing():
    result = get_reviews([])

    assert result["reviews"] == []
    assert result["pagination"]["total"] == 0
    assert result["pagination"]["totalPages"] == 0
