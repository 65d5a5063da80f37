"""Unit tests for tool validation and dispatch."""
# pylint: disable=missing-function-docstring

import base64
import io
import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

from PIL import Image

from stability_mcp.errors import InvalidParametersError, ToolArgumentError, UnknownToolError
from stability_mcp.models import Operation, ResourceContext
from stability_mcp.resources import FilesystemResourceStore
from stability_mcp.tools import (
    CONTROL_STRUCTURE,
    GENERATE_IMAGE_SD35,
    REMOVE_BACKGROUND,
    UPSCALE_CREATIVE,
    ToolDispatcher,
)


def _png_bytes() -> bytes:
    buf = io.BytesIO()
    Image.new("RGBA", (4, 4), (0, 255, 0, 255)).save(buf, format="PNG")
    return buf.getvalue()


def _png_b64() -> str:
    return base64.b64encode(_png_bytes()).decode("ascii")


class ToolDispatcherTests(unittest.IsolatedAsyncioTestCase):
    """Dispatch against a fake client and a real filesystem store."""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)
        self.store = FilesystemResourceStore(self.root)
        self.client = MagicMock()
        for method in ("generate_image_sd35", "remove_background", "upscale_creative", "control_structure"):
            setattr(self.client, method, AsyncMock(return_value=_png_b64()))
        self.dispatcher = ToolDispatcher(self.client, self.store)

    def tearDown(self):
        self.tmp.cleanup()

    async def _source_uri(self) -> str:
        stored = await self.store.write_resource("source.png", _png_bytes(), "image/png")
        return stored.uri

    def test_definitions_advertise_all_tools(self):
        definitions = {tool.name: tool for tool in self.dispatcher.definitions()}
        self.assertEqual(
            set(definitions), {GENERATE_IMAGE_SD35, REMOVE_BACKGROUND, UPSCALE_CREATIVE, CONTROL_STRUCTURE}
        )
        schema = definitions[GENERATE_IMAGE_SD35].inputSchema
        self.assertIn("outputImageFileName", schema["properties"])
        self.assertIn("prompt", schema["required"])
        self.assertIn("imageFileUri", definitions[REMOVE_BACKGROUND].inputSchema["required"])

    async def test_generate_stores_image_and_metadata(self):
        content = await self.dispatcher.dispatch(
            GENERATE_IMAGE_SD35,
            {"prompt": "a lighthouse", "outputImageFileName": "lighthouse", "aspectRatio": "16:9"},
            ResourceContext(requestor_ip_address="10.0.0.1"),
        )

        self.assertEqual(len(content), 1)
        self.assertIn('Processed image "lighthouse.png"', content[0].text)
        self.assertIn((self.root.resolve() / "lighthouse.png").as_uri(), content[0].text)
        self.assertEqual((self.root / "lighthouse.png").read_bytes(), _png_bytes())

        request = self.client.generate_image_sd35.await_args.args[0]
        self.assertEqual(request.operation, Operation.GENERATE)
        self.assertEqual(request.prompt, "a lighthouse")
        self.assertEqual(request.aspect_ratio, "16:9")

        metadata = json.loads((self.root / "lighthouse.txt").read_text())
        self.assertEqual(metadata["requestParams"]["prompt"], "a lighthouse")
        self.assertEqual(metadata["successInfo"]["mimeType"], "image/png")
        self.assertIsNone(metadata["error"])

    async def test_missing_required_arguments_name_the_field(self):
        uri = "file:///tmp/source.png"
        cases = [
            (GENERATE_IMAGE_SD35, {"outputImageFileName": "x"}, "prompt"),
            (REMOVE_BACKGROUND, {"outputImageFileName": "x"}, "imageFileUri"),
            (UPSCALE_CREATIVE, {"imageFileUri": uri, "outputImageFileName": "x"}, "prompt"),
            (CONTROL_STRUCTURE, {"imageFileUri": uri, "prompt": "p"}, "outputImageFileName"),
        ]
        for name, arguments, field in cases:
            with self.subTest(tool=name):
                with self.assertRaises(ToolArgumentError) as ctx:
                    await self.dispatcher.dispatch(name, arguments)
                self.assertIn(field, str(ctx.exception))
                self.assertTrue(str(ctx.exception).startswith("Invalid arguments: "))

        for method in ("generate_image_sd35", "remove_background", "upscale_creative", "control_structure"):
            getattr(self.client, method).assert_not_awaited()
        self.assertEqual(list(self.root.iterdir()), [])

    async def test_out_of_range_values_are_rejected(self):
        with self.assertRaises(ToolArgumentError) as ctx:
            await self.dispatcher.dispatch(
                UPSCALE_CREATIVE,
                {"imageFileUri": "x.png", "prompt": "p", "outputImageFileName": "x", "creativity": 0.9},
            )
        self.assertIn("creativity", str(ctx.exception))

    async def test_output_name_must_be_plain(self):
        with self.assertRaises(ToolArgumentError):
            await self.dispatcher.dispatch(GENERATE_IMAGE_SD35, {"prompt": "p", "outputImageFileName": "../x"})

    async def test_unknown_tool(self):
        with self.assertRaises(UnknownToolError) as ctx:
            await self.dispatcher.dispatch("stability-ai-paint", {})
        self.assertEqual(str(ctx.exception), "Unknown tool: stability-ai-paint")

    async def test_provider_failure_writes_error_metadata(self):
        self.client.generate_image_sd35 = AsyncMock(side_effect=InvalidParametersError(["bad size"]))
        with self.assertRaises(InvalidParametersError):
            await self.dispatcher.dispatch(GENERATE_IMAGE_SD35, {"prompt": "p", "outputImageFileName": "broken"})

        self.assertFalse((self.root / "broken.png").exists())
        metadata = json.loads((self.root / "broken.txt").read_text())
        self.assertEqual(metadata["error"], "Invalid parameters: bad size")
        self.assertIsNone(metadata["successInfo"])

    async def test_metadata_can_be_disabled(self):
        self.client.generate_image_sd35 = AsyncMock(side_effect=InvalidParametersError(["bad"]))
        dispatcher = ToolDispatcher(self.client, self.store, save_metadata=False, save_metadata_failed=False)
        with self.assertRaises(InvalidParametersError):
            await dispatcher.dispatch(GENERATE_IMAGE_SD35, {"prompt": "p", "outputImageFileName": "a"})

        self.client.generate_image_sd35 = AsyncMock(return_value=_png_b64())
        await dispatcher.dispatch(GENERATE_IMAGE_SD35, {"prompt": "p", "outputImageFileName": "b"})
        self.assertEqual(sorted(p.name for p in self.root.iterdir()), ["b.png"])

    async def test_remove_background_reads_source_resource(self):
        uri = await self._source_uri()
        await self.dispatcher.dispatch(
            REMOVE_BACKGROUND, {"imageFileUri": uri, "outputImageFileName": "cutout", "outputFormat": "png"}
        )
        image_path, request = self.client.remove_background.await_args.args
        self.assertEqual(image_path, self.root.resolve() / "source.png")
        self.assertEqual(request.operation, Operation.REMOVE_BACKGROUND)
        self.assertTrue((self.root / "cutout.png").exists())

    async def test_upscale_and_control_pass_tool_parameters(self):
        uri = await self._source_uri()
        await self.dispatcher.dispatch(
            UPSCALE_CREATIVE,
            {"imageFileUri": uri, "prompt": "crisp", "creativity": 0.4, "outputImageFileName": "big"},
        )
        await self.dispatcher.dispatch(
            CONTROL_STRUCTURE,
            {"imageFileUri": uri, "prompt": "castle", "controlStrength": 0.6, "outputImageFileName": "castle"},
        )
        self.assertEqual(self.client.upscale_creative.await_args.args[1].creativity, 0.4)
        self.assertEqual(self.client.control_structure.await_args.args[1].control_strength, 0.6)

    async def test_source_file_is_released_after_provider_call(self):
        uri = await self._source_uri()
        self.store.release_file = AsyncMock()
        self.client.upscale_creative = AsyncMock(side_effect=InvalidParametersError(["bad"]))

        await self.dispatcher.dispatch(
            REMOVE_BACKGROUND, {"imageFileUri": uri, "outputImageFileName": "cutout"}
        )
        with self.assertRaises(InvalidParametersError):
            await self.dispatcher.dispatch(
                UPSCALE_CREATIVE, {"imageFileUri": uri, "prompt": "p", "outputImageFileName": "big"}
            )

        source = self.root.resolve() / "source.png"
        self.assertEqual(self.store.release_file.await_count, 2)
        self.store.release_file.assert_awaited_with(source)

    async def test_missing_source_resource_fails_without_provider_call(self):
        missing = (self.root.resolve() / "missing.png").as_uri()
        with self.assertRaises(LookupError):
            await self.dispatcher.dispatch(
                CONTROL_STRUCTURE, {"imageFileUri": missing, "prompt": "p", "outputImageFileName": "c"}
            )
        self.client.control_structure.assert_not_awaited()


if __name__ == "__main__":
    unittest.main()
