"""Tests for per-image embedding generation."""

import weakref

import pytest

from conftest import EMBEDDING_DIM, FakeProvider, encode_png, make_blank_image, make_face_image

from frameface_cluster.attributes import UNKNOWN
from frameface_cluster.errors import InvalidImage, ModelInferenceFailure
from frameface_cluster.generator import EmbeddingGenerator, buffer_scope


def test_one_face_image(generator):
    record = generator.generate(encode_png(make_face_image(1)))
    assert record is not None
    assert record.faces == 1
    assert len(record.predictions) == 1
    assert len(record.embedding) == EMBEDDING_DIM
    assert record.path == ""
    face = record.predictions[0]
    assert face.probability == pytest.approx(0.9)
    assert face.attributes == {"gender": UNKNOWN, "ageGroup": UNKNOWN,
                               "hairColor": UNKNOWN, "skinTone": UNKNOWN}
    assert set(face.attribute_confidence.values()) == {0.5}


def test_blank_image_has_no_faces(generator):
    assert generator.generate(encode_png(make_blank_image())) is None


def test_generation_is_deterministic(provider):
    data = encode_png(make_face_image(2))
    first = EmbeddingGenerator(provider).generate(data)
    second = EmbeddingGenerator(provider).generate(data)
    assert first.embedding == second.embedding
    assert first.predictions[0].to_dict() == second.predictions[0].to_dict()


def test_embedding_is_memoised_by_buffer(generator, provider):
    data = encode_png(make_face_image(4))
    generator.generate(data)
    generator.generate(data)
    assert provider.embed_calls == 1
    generator.clear_cache()
    generator.generate(data)
    assert provider.embed_calls == 2


def test_undecodable_input(generator):
    with pytest.raises(InvalidImage):
        generator.generate(b"definitely not an image")
    with pytest.raises(InvalidImage):
        generator.generate(b"")


def test_uninitialised_provider_fails():
    gen = EmbeddingGenerator(FakeProvider())
    with pytest.raises(ModelInferenceFailure):
        gen.generate(encode_png(make_face_image(1)))


class BrokenAttributes(FakeProvider):
    def classify_attributes(self, face_crop):
        raise RuntimeError("attribute head exploded")


def test_attribute_failure_falls_back_to_defaults():
    gen = EmbeddingGenerator(BrokenAttributes().initialize())
    record = gen.generate(encode_png(make_face_image(5)))
    assert record.attributes["gender"] == UNKNOWN
    assert record.attribute_confidence["gender"] == 0.5


class BrokenEmbedder(FakeProvider):
    def embed(self, tensor):
        raise RuntimeError("out of memory")


def test_embedding_failure_is_reported():
    gen = EmbeddingGenerator(BrokenEmbedder().initialize())
    with pytest.raises(ModelInferenceFailure):
        gen.generate(encode_png(make_face_image(6)))


class TrackingProvider(FakeProvider):
    def __init__(self):
        super().__init__()
        self.seen = []

    def embed(self, tensor):
        self.seen.append(weakref.ref(tensor))
        return super().embed(tensor)

    def classify_attributes(self, face_crop):
        self.seen.append(weakref.ref(face_crop))
        return super().classify_attributes(face_crop)


def test_intermediate_arrays_are_released_after_generation():
    provider = TrackingProvider().initialize()
    record = EmbeddingGenerator(provider).generate(encode_png(make_face_image(7)))
    assert record is not None
    assert len(provider.seen) == 2
    assert all(ref() is None for ref in provider.seen)


def test_buffer_scope_releases_on_error():
    with pytest.raises(RuntimeError):
        with buffer_scope() as buffers:
            buffers.append(object())
            held = buffers
            raise RuntimeError("boom")
    assert held == []


def test_224_pixel_frame_with_one_face(generator):
    record = generator.generate(encode_png(make_face_image(8, size=224)))
    assert record.faces == 1
    assert len(record.predictions) == 1
    assert record.embedding


@pytest.mark.parametrize("size", [1, 100])
def test_solid_colour_frames_have_no_faces(generator, size):
    assert generator.generate(encode_png(make_blank_image(size=size, value=40))) is None
