"""CSV bulk import of students and teachers."""
