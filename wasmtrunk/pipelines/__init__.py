"""Asset pipelines driven by the links in the source HTML document."""