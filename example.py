"""Example usage of the native_marshal library."""

from native_marshal import (
    CompoundFieldLayout,
    CompoundRecordCodec,
    MemoryLibrary,
    PrimitiveType,
    VLRecordMarshaller,
    flatten,
    unflatten,
)

# Flatten a 2x3 matrix of int32 into a contiguous buffer and back
matrix = [[1, 2, 3], [4, 5, 6]]
buffer = flatten(matrix, PrimitiveType.INT32)
print(f"Flattened {matrix} into {len(buffer)} bytes: {bytes(buffer).hex()}")

restored = unflatten(buffer, [[0, 0, 0], [0, 0, 0]], PrimitiveType.INT32)
print(f"Unflattened back into {restored}")

# Describe some record types using the DSL
library = MemoryLibrary()
track_type = library.parse_type("compound { id: int32, name: string @ 8, code: string(4) }")
samples_type = library.parse_type("vlen<float64>")

# Write and read compound records with a variable-length string field
layout = CompoundFieldLayout.from_type(library.element_type(track_type))
codec = CompoundRecordCodec(layout, library)
tracks = library.create_dataset(track_type, 3)
codec.write(tracks, track_type, [(1, "Alpha", "A1"), (2, "Bravo", "B22"), (3, "Charlie", "C333")])
print("\nTracks:")
for record in codec.read(tracks, track_type, 3):
    print(f"  {dict(zip(layout.field_names, record))}")

# Write and read variable-length sequences
marshaller = VLRecordMarshaller(library)
samples = library.create_dataset(samples_type, 3)
marshaller.write(samples, samples_type, [[0.5, 1.5], [], [2.0, 4.0, 8.0]])
print("\nSamples:")
for i, values in enumerate(marshaller.read(samples, samples_type, 3)):
    print(f"  [{i}] {values}")

# Write and read fixed-size arrays of variable strings
tags_type = library.parse_type("array<string, 2>")
tags = library.create_dataset(tags_type, 2)
marshaller.write_arrays(tags, tags_type, [["red", "green"], ["blue", None]])
print(f"\nTags: {marshaller.read_arrays(tags, tags_type, 2)}")

print(f"\nLive foreign blocks owned by datasets: {library.heap.live_blocks}")
