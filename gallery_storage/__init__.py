"""Cloud storage integration layer for the photo gallery."""
